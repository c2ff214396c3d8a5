import logging
import os
import queue as queue_lib
import threading
import time

from keeper.archive import remove_from_download_archive
from keeper.errors import AdapterFailure, NoEnabledPlaylists, NotEnabled, NotFound, PersistenceFailure, ShutdownTimeout
from keeper.log import log_event
from keeper.models import ActiveDownload, Channel, QueueTask, VideoStatus
from keeper.ytdlp import cleanup_partial_files, read_sidecar_metadata

_DEFAULT_CONCURRENCY = 2
_DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 180
_DEFAULT_POLL_INTERVAL_SECONDS = 0.5
_PLAYLIST_URL = "https://www.youtube.com/playlist?list={}"
_VIDEO_URL = "https://www.youtube.com/watch?v={}"


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


class DownloadManager:
    """Bounded worker pool draining an in-memory FIFO of download tasks.

    The SQLite store stays the source of truth: a worker only downloads a
    video after winning the ``pending -> downloading`` update, so a task that
    was queued twice is skipped the second time. The queue itself is rebuilt
    from ``pending`` rows when the pool starts with nothing queued.
    """

    def __init__(
        self,
        store,
        adapter,
        compiler,
        *,
        settings=None,
        concurrency=None,
        shutdown_timeout=None,
        archive_path=None,
        poll_interval=None,
    ):
        self.store = store
        self.adapter = adapter
        self.compiler = compiler
        self.concurrency = _first_set(concurrency, getattr(settings, "concurrency", None), _DEFAULT_CONCURRENCY)
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        self.shutdown_timeout = _first_set(
            shutdown_timeout,
            getattr(settings, "shutdown_timeout", None),
            _DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
        )
        self.archive_path = archive_path or getattr(settings, "archive_path", None)
        self.poll_interval = _first_set(poll_interval, _DEFAULT_POLL_INTERVAL_SECONDS)

        self._queue = queue_lib.Queue()
        self._queued_ids = set()
        self._active = {}
        self._active_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._threads = []
        self._alive = 0
        self._stop_event = threading.Event()
        self._abort_event = threading.Event()
        self._fatal = None

    # ------------------------------------------------------------------
    # Enqueue entry points
    # ------------------------------------------------------------------

    def enqueue_playlist(self, playlist_id):
        playlist = self.store.get_playlist(playlist_id)
        if playlist is None:
            raise NotFound("playlist", playlist_id)
        if not playlist.enabled:
            raise NotEnabled("playlist", playlist_id)
        channel = self.store.get_channel(playlist.channel_id)
        if channel is None:
            raise NotFound("channel", playlist.channel_id)

        url = playlist.url or _PLAYLIST_URL.format(playlist.playlist_id)
        logging.info("Enumerating videos in playlist: %s", playlist.title or playlist.playlist_id)
        entries = self.adapter.enumerate_playlist_videos(url)
        for entry in entries:
            if not entry.get("id"):
                continue
            self.store.upsert_video(
                entry["id"],
                channel_id=channel.id,
                playlist_id=playlist.id,
                title=entry.get("title"),
                url=entry.get("url"),
                uploader=entry.get("uploader"),
                upload_date=entry.get("upload_date"),
                duration=entry.get("duration"),
                playlist_index=entry.get("index"),
            )
        self.store.set_playlist_video_count(playlist.id, len(entries))

        options = self.compiler.compile(channel, playlist)
        pending = [
            video
            for video in self.store.list_videos_by_playlist(playlist.id)
            if video.download_status == VideoStatus.PENDING
        ]
        queued = self._push([self._make_task(video, channel, playlist, options) for video in pending])
        log_event(
            "info",
            event="playlist_enqueued",
            playlist_id=playlist.id,
            channel_id=channel.id,
            discovered=len(entries),
            queued=queued,
        )
        self.start()
        return queued

    def enqueue_channel(self, channel_id):
        channel = self.store.get_channel(channel_id)
        if channel is None:
            raise NotFound("channel", channel_id)
        playlists = self.store.list_playlists(channel.id, enabled_only=True)
        if not playlists:
            raise NoEnabledPlaylists(channel.id)
        total = 0
        for playlist in playlists:
            total += self.enqueue_playlist(playlist.id)
        return {"queued": total, "playlists": len(playlists)}

    def enqueue_single_video(self, url, channel_id=None, *, force=False):
        channel = None
        if channel_id is not None:
            channel = self.store.get_channel(channel_id)
            if channel is None:
                raise NotFound("channel", channel_id)

        info = self.adapter.get_video_info(url)
        video_id = info.get("id")
        if not video_id:
            raise AdapterFailure(f"yt-dlp returned no video id for {url}")

        existing = self.store.get_video(video_id)
        if existing is not None and existing.download_status != VideoStatus.PENDING:
            if existing.download_status == VideoStatus.DOWNLOADING or not force:
                return {"video_id": video_id, "queued": False, "status": existing.download_status}
            self._reset_for_redownload(existing)

        video = self.store.upsert_video(
            video_id,
            channel_id=channel.id if channel else None,
            title=info.get("title"),
            url=info.get("url") or url,
            uploader=info.get("uploader"),
            upload_date=info.get("upload_date"),
            duration=info.get("duration"),
        )
        options = self.compiler.compile(channel or Channel(id=None, url=url))
        queued = self._push([self._make_task(video, channel, None, options)])
        log_event("info", event="video_enqueued", video_id=video_id, channel_id=channel_id, force=force)
        self.start()
        return {"video_id": video_id, "queued": bool(queued), "status": VideoStatus.PENDING}

    def redownload(self, video_id):
        video = self.store.get_video(video_id)
        if video is None:
            raise NotFound("video", video_id)
        if video.download_status == VideoStatus.DOWNLOADING:
            return False
        if video.download_status != VideoStatus.PENDING:
            self._reset_for_redownload(video)
        queued = self._push(self._build_tasks([self.store.get_video(video_id)]))
        self.start()
        return bool(queued)

    def retry_failed(self):
        reset = self.store.reset_failed()
        if not reset:
            return 0
        remove_from_download_archive(self.archive_path, [video.video_id for video in reset])
        self._push(self._build_tasks(reset))
        log_event("info", event="failed_videos_retried", count=len(reset))
        self.start()
        return len(reset)

    def _reset_for_redownload(self, video):
        self.store.reset_to_pending(video.video_id)
        remove_from_download_archive(self.archive_path, [video.video_id])
        log_event("info", event="video_reset", video_id=video.video_id, previous=video.download_status)

    # ------------------------------------------------------------------
    # Task building
    # ------------------------------------------------------------------

    def _make_task(self, video, channel, playlist, options):
        template_fields = None
        if playlist is not None and not (channel and channel.flat_mode):
            template_fields = {
                "playlist_title": playlist.title or playlist.playlist_id,
                "playlist_id": playlist.playlist_id,
                "playlist_index": video.playlist_index,
            }
        return QueueTask(
            video_id=video.video_id,
            channel_id=channel.id if channel else None,
            url=video.url or _VIDEO_URL.format(video.video_id),
            options=options,
            playlist_id=playlist.id if playlist else None,
            playlist_index=video.playlist_index,
            template_fields=template_fields,
        )

    def _build_tasks(self, videos):
        """Tasks for persisted rows, compiling options once per channel/playlist."""
        channels = {}
        playlists = {}
        compiled = {}
        tasks = []
        for video in videos:
            if video is None:
                continue
            if video.channel_id not in channels:
                channels[video.channel_id] = (
                    self.store.get_channel(video.channel_id) if video.channel_id is not None else None
                )
            if video.playlist_id not in playlists:
                playlists[video.playlist_id] = (
                    self.store.get_playlist(video.playlist_id) if video.playlist_id is not None else None
                )
            channel = channels[video.channel_id]
            playlist = playlists[video.playlist_id]
            key = (video.channel_id, video.playlist_id)
            if key not in compiled:
                compiled[key] = self.compiler.compile(
                    channel or Channel(id=None, url=video.url or ""),
                    playlist,
                )
            tasks.append(self._make_task(video, channel, playlist, compiled[key]))
        return tasks

    def _push(self, tasks):
        pushed = 0
        with self._state_lock:
            for task in tasks:
                if task.video_id in self._queued_ids:
                    continue
                self._queued_ids.add(task.video_id)
                self._queue.put(task)
                pushed += 1
        return pushed

    # ------------------------------------------------------------------
    # Pool lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Launch the worker pool unless it is already running.

        Called while a shutdown is still waiting on a worker, the stop flag is
        lifted and the pool is topped back up so newly queued tasks get drained.
        """
        with self._state_lock:
            if self._alive > 0 and not self._stop_event.is_set():
                return False
            resumed = self._alive > 0
            self._stop_event.clear()
            if self._abort_event.is_set():
                # In-flight downloads keep the old, already-set event.
                self._abort_event = threading.Event()
            self._fatal = None
            if self._queue.empty():
                recovered = self._build_tasks(self.store.list_pending_videos())
                for task in recovered:
                    if task.video_id not in self._queued_ids:
                        self._queued_ids.add(task.video_id)
                        self._queue.put(task)
                if recovered:
                    log_event("info", event="queue_recovered", count=len(recovered))
            spawn = max(0, self.concurrency - self._alive)
            base = len(self._threads) if resumed else 0
            threads = [
                threading.Thread(target=self._worker_loop, name=f"keeper-worker-{base + idx}", daemon=True)
                for idx in range(spawn)
            ]
            self._alive += spawn
            self._threads = (self._threads if resumed else []) + threads
        for thread in threads:
            thread.start()
        if resumed:
            log_event("warning", event="pool_resumed", lingering=self.concurrency - spawn, workers=spawn)
        else:
            log_event("info", event="pool_started", workers=spawn, queue=self._queue.qsize())
        return True

    def is_running(self):
        with self._state_lock:
            return self._alive > 0

    def _next_task(self):
        """Dequeue under the state lock; retire this worker when there is nothing to do."""
        with self._state_lock:
            if not self._stop_event.is_set():
                try:
                    task = self._queue.get_nowait()
                except queue_lib.Empty:
                    task = None
                if task is not None:
                    self._queued_ids.discard(task.video_id)
                    return task
            self._alive -= 1
            return None

    def _worker_loop(self):
        retired = False
        try:
            while True:
                task = self._next_task()
                if task is None:
                    retired = True
                    return
                self._process_task(task)
        except PersistenceFailure as exc:
            logging.exception("Worker stopped: store failure")
            with self._state_lock:
                if self._fatal is None:
                    self._fatal = exc
        finally:
            if not retired:
                with self._state_lock:
                    self._alive -= 1

    def _process_task(self, task):
        abort_event = self._abort_event
        if not self.store.claim_video(task.video_id):
            log_event("info", event="task_skipped", video_id=task.video_id, reason="not_pending")
            return

        entry = ActiveDownload(
            video_id=task.video_id,
            started_at=time.time(),
            output_dir=task.options.output_dir,
            cancel_event=abort_event,
        )
        with self._active_lock:
            self._active[task.video_id] = entry
        log_event("info", event="download_started", video_id=task.video_id, status=VideoStatus.DOWNLOADING)

        def on_progress(update):
            with self._active_lock:
                current = self._active.get(task.video_id)
                if current is not None:
                    current.progress = update.percent

        try:
            try:
                file_path = self.adapter.download(
                    task.url,
                    task.options,
                    on_progress,
                    template_fields=task.template_fields,
                    cancel_event=abort_event,
                )
                if file_path is None:
                    self._record_archived(task)
                    return
                file_size = os.path.getsize(file_path)
            except PersistenceFailure:
                raise
            except Exception as exc:
                self._record_failure(task, exc)
                return
            technical = self._read_sidecar(task.video_id, file_path)
            if not self.store.mark_completed(task.video_id, file_path=file_path, file_size=file_size, **technical):
                log_event("warning", event="completion_ignored", video_id=task.video_id, reason="status_changed")
                return
            log_event(
                "info",
                event="download_completed",
                video_id=task.video_id,
                status=VideoStatus.COMPLETED,
                file_path=file_path,
                file_size=file_size,
            )
        finally:
            with self._active_lock:
                self._active.pop(task.video_id, None)

    def _read_sidecar(self, video_id, file_path):
        try:
            return read_sidecar_metadata(file_path)
        except (OSError, ValueError) as exc:
            logging.warning("[%s] Could not read info.json sidecar: %s", video_id, exc)
            return {}

    def _record_archived(self, task):
        """yt-dlp skipped an archived id: complete the row, keeping a known file."""
        video = self.store.get_video(task.video_id)
        file_path = video.file_path if video is not None else None
        file_size = None
        if file_path and os.path.isfile(file_path):
            file_size = os.path.getsize(file_path)
        else:
            file_path = None
        technical = {}
        if video is not None and file_path:
            technical = {
                "resolution": video.resolution,
                "fps": video.fps,
                "vcodec": video.vcodec,
                "acodec": video.acodec,
            }
        if not self.store.mark_completed(task.video_id, file_path=file_path, file_size=file_size, **technical):
            log_event("warning", event="completion_ignored", video_id=task.video_id, reason="status_changed")
            return
        log_event(
            "info",
            event="download_skipped",
            video_id=task.video_id,
            status=VideoStatus.COMPLETED,
            reason="already_archived",
            file_path=file_path,
        )

    def _record_failure(self, task, exc):
        message = str(exc) or exc.__class__.__name__
        if self.store.mark_failed(task.video_id, message):
            log_event("error", event="download_failed", video_id=task.video_id, status=VideoStatus.FAILED, error=message)
        cleanup_partial_files(task.options.output_dir, task.video_id)

    # ------------------------------------------------------------------
    # Status / shutdown
    # ------------------------------------------------------------------

    def status(self):
        now = time.time()
        with self._state_lock:
            depth = self._queue.qsize()
            running = self._alive > 0
        with self._active_lock:
            downloads = [
                {
                    "video_id": entry.video_id,
                    "progress": entry.progress,
                    "elapsed": int(now - entry.started_at),
                }
                for entry in self._active.values()
            ]
        return {"queue": depth, "active": len(downloads), "downloads": downloads, "running": running}

    def active_count(self):
        with self._active_lock:
            return len(self._active)

    def wait_idle(self, timeout=None):
        """Join the current workers; re-raises a store failure a worker hit."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._state_lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        idle = not any(thread.is_alive() for thread in threads)
        with self._state_lock:
            fatal, self._fatal = self._fatal, None
        if fatal is not None:
            raise fatal
        return idle

    def shutdown(self, timeout=None):
        """Stop claiming work, wait for in-flight downloads, force-fail leftovers.

        Returns the video ids that were failed because the timeout ran out.
        Queued but unclaimed tasks stay ``pending`` in the store.
        """
        timeout = self.shutdown_timeout if timeout is None else timeout
        self._stop_event.set()
        log_event("info", event="shutdown_requested", active=self.active_count(), timeout=timeout)

        deadline = time.monotonic() + timeout
        while self.active_count():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(self.poll_interval, remaining))

        with self._active_lock:
            leftovers = list(self._active.values())

        cancelled = []
        if leftovers:
            self._abort_event.set()
            reason = str(ShutdownTimeout(timeout))
            for entry in leftovers:
                if self.store.mark_failed(entry.video_id, reason):
                    cancelled.append(entry.video_id)
                    log_event(
                        "warning",
                        event="download_cancelled",
                        video_id=entry.video_id,
                        status=VideoStatus.FAILED,
                        reason=reason,
                    )
                cleanup_partial_files(entry.output_dir, entry.video_id)
            with self._active_lock:
                for entry in leftovers:
                    self._active.pop(entry.video_id, None)

        with self._state_lock:
            dropped = 0
            while True:
                try:
                    self._queue.get_nowait()
                except queue_lib.Empty:
                    break
                dropped += 1
            self._queued_ids.clear()
        log_event("info", event="shutdown_complete", cancelled=len(cancelled), dropped=dropped)
        return cancelled
