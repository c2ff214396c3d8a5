import logging
from dataclasses import dataclass
from functools import partial

from keeper.channels import refresh_channel
from keeper.download_queue import DownloadManager
from keeper.options import OptionsCompiler
from keeper.paths import ensure_dir
from keeper.scheduler import Scheduler
from keeper.store import KeeperStore
from keeper.tasks import BackgroundTasks
from keeper.youtube_api import YouTubeApiClient
from keeper.ytdlp import YtDlpAdapter


@dataclass
class KeeperService:
    settings: object
    store: KeeperStore
    adapter: object
    compiler: OptionsCompiler
    manager: DownloadManager
    scheduler: Scheduler
    tasks: BackgroundTasks

    def refresh_channel(self, channel_id, cancel_event=None, *, stamp=True):
        return refresh_channel(self.store, self.adapter, channel_id, cancel_event, stamp=stamp)

    def submit_refresh(self, channel_id):
        return self.tasks.submit(f"refresh-channel-{channel_id}", partial(self.refresh_channel, channel_id))

    def close(self, timeout=None):
        self.scheduler.close()
        return self.manager.shutdown(timeout)


def build_service(settings, *, adapter=None):
    ensure_dir(settings.downloads_dir)
    store = KeeperStore(settings.db_path)
    if adapter is None:
        api_client = None
        if settings.youtube_api_key:
            api_client = YouTubeApiClient(
                settings.youtube_api_key,
                settings.quota_path,
                quota_limit=settings.youtube_quota_limit,
            )
            logging.info("YouTube Data API enabled for playlist enumeration")
        adapter = YtDlpAdapter(settings, api_client=api_client)
    compiler = OptionsCompiler(store, settings)
    manager = DownloadManager(store, adapter, compiler, settings=settings)
    service = KeeperService(
        settings=settings,
        store=store,
        adapter=adapter,
        compiler=compiler,
        manager=manager,
        scheduler=None,
        tasks=BackgroundTasks(),
    )
    service.scheduler = Scheduler(
        store,
        manager,
        refresher=partial(service.refresh_channel, stamp=False),
        interval_days=settings.scheduler_interval_days,
    )
    return service
