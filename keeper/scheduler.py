import logging
import threading
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from keeper.errors import NotFound, PersistenceFailure
from keeper.log import log_event

SCHEDULE_JOB_ID = "channel_sweep"
SECONDS_PER_DAY = 86400
_DEFAULT_INTERVAL_DAYS = 7


def parse_timestamp(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        logging.warning("Unparseable last_scraped_at %r; treating channel as never scraped", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_channel_due(channel, now):
    last = parse_timestamp(channel.last_scraped_at)
    if last is None:
        return True
    interval = max(1, int(channel.rescrape_interval_days or _DEFAULT_INTERVAL_DAYS))
    return (now - last).total_seconds() >= interval * SECONDS_PER_DAY


class Scheduler:
    """Recurring sweep that re-scrapes due channels and feeds the download queue.

    ``refresher`` (optional) is called with a channel row id before the
    channel is enqueued, to pick up playlists added since the last scrape.
    """

    def __init__(self, store, manager, *, refresher=None, interval_days=None):
        self.store = store
        self.manager = manager
        self.refresher = refresher
        self.interval_days = interval_days or _DEFAULT_INTERVAL_DAYS
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._lock = threading.Lock()
        self._last_run = None

    def start(self, interval_days=None):
        if interval_days is not None:
            if interval_days <= 0:
                raise ValueError("interval_days must be positive")
            self.interval_days = interval_days
        with self._lock:
            if not self._scheduler.running:
                self._scheduler.start()
            self._scheduler.add_job(
                self._tick,
                trigger=IntervalTrigger(seconds=int(self.interval_days * SECONDS_PER_DAY)),
                id=SCHEDULE_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
                next_run_time=datetime.now(timezone.utc),
            )
        logging.info("Scheduler started (every %s day(s))", self.interval_days)
        return self.status()

    def stop(self):
        with self._lock:
            if self._scheduler.running and self._scheduler.get_job(SCHEDULE_JOB_ID):
                self._scheduler.remove_job(SCHEDULE_JOB_ID)
                logging.info("Scheduler stopped")
        return self.status()

    def close(self):
        with self._lock:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)

    def is_running(self):
        return bool(self._scheduler.running and self._scheduler.get_job(SCHEDULE_JOB_ID))

    def status(self):
        job = self._scheduler.get_job(SCHEDULE_JOB_ID) if self._scheduler.running else None
        next_run = getattr(job, "next_run_time", None) if job else None
        return {
            "running": job is not None,
            "interval_days": self.interval_days,
            "next_run": next_run.isoformat() if next_run else None,
            "last_run": self._last_run,
            "queue_status": self.manager.status(),
        }

    def _tick(self):
        try:
            self.check_and_download()
        except Exception:
            logging.exception("Scheduled channel sweep failed")

    def check_and_download(self, now=None):
        """One sweep over every channel; returns the ids triggered and failed."""
        now = now or datetime.now(timezone.utc)
        self._last_run = now.isoformat()
        triggered = []
        failed = []
        for channel in self.store.list_channels():
            if not channel.enabled:
                continue
            if not is_channel_due(channel, now):
                continue
            try:
                self._run_channel(channel, now)
                triggered.append(channel.id)
            except PersistenceFailure:
                raise
            except Exception as exc:
                failed.append(channel.id)
                log_event("error", event="channel_sweep_failed", channel_id=channel.id, url=channel.url, error=str(exc))
        log_event("info", event="channel_sweep_finished", triggered=triggered, failed=failed)
        return {"triggered": triggered, "failed": failed}

    def trigger_channel(self, channel_id):
        channel = self.store.get_channel(channel_id)
        if channel is None:
            raise NotFound("channel", channel_id)
        return self._run_channel(channel, datetime.now(timezone.utc))

    def _run_channel(self, channel, now):
        logging.info("Checking channel %s (%s)", channel.id, channel.channel_name or channel.url)
        if self.refresher is not None:
            self.refresher(channel.id)
        result = self.manager.enqueue_channel(channel.id)
        self.store.touch_channel_scraped(channel.id, now.isoformat())
        log_event("info", event="channel_enqueued", channel_id=channel.id, **result)
        return result
