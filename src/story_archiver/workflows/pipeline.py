"""Stage-by-stage orchestration of one story archive run."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.keys import K_CSS, K_HTML, K_HTML_ELEMENTS, K_IMAGES, K_URL, MISC_IMAGE_KEYS
from .archive_resolver import (
    DestinationCollisionError,
    MetadataFetchError,
    PostFunc,
    RunContext,
    StoryNotSpecifiedError,
    resolve_archive,
)
from .archive_utils import (
    copy_resources,
    persist_story_json,
    write_asset_index,
    write_scoped_css,
    write_title_file,
)
from .archiver_config import (
    ARCHIVE_VIDEOS,
    BUILD_ASSETS_DIR,
    CSS_SCOPE_SELECTOR,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ERRORS,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    FIXED_ASSETS,
    SCOPED_CSS_FILE,
    STATIC_RESOURCES_DIR,
    STORY_ENDPOINT,
)
from .archiver_utils import asset_filename, relative_posix, resolve_downloader
from .asset_fetch import (
    KIND_VIDEO,
    POLICY_KEEP,
    POLICY_OVERWRITE,
    AssetFetcher,
    BatchReport,
    FetchConfig,
    FetchTask,
    RunOutcome,
)
from .extract_utils import (
    AssetReference,
    extract_css_references,
    extract_html_references,
    resolve_reference,
)
from .rewrite_utils import rewrite_html, rewrite_references, scope_css
from .video_utils import VideoDownloader, canonical_video_url, youtube_video_id

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NO_STORY = 2
EXIT_THRESHOLD = 3
EXIT_METADATA = 4


class ErrorThresholdExceeded(RuntimeError):
    """Cumulative fetch failures went past the configured limit."""


class PipelineState(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class ArchiveOptions:
    story_id: Optional[int] = None
    out_root: Path = Path(".")
    force_update: bool = False
    refresh_assets: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    retries: int = DEFAULT_RETRIES
    max_errors: int = DEFAULT_MAX_ERRORS
    timeout: float = DEFAULT_TIMEOUT
    downloader: Optional[str] = None
    archive_videos: bool = ARCHIVE_VIDEOS
    endpoint: str = STORY_ENDPOINT
    backoff_initial: float = 0.8


@dataclass
class PipelineResult:
    state: PipelineState
    exit_code: int
    outcome: RunOutcome
    context: Optional[RunContext] = None
    stages: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def archive_dir(self) -> Optional[Path]:
        return self.context.location.archive_dir if self.context else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "exit_code": self.exit_code,
            "story_id": self.context.story_id if self.context else None,
            "archive_dir": str(self.archive_dir) if self.archive_dir else None,
            "stages": list(self.stages),
            "failures": self.outcome.failures,
            "max_errors": self.outcome.max_errors,
            "failed_urls": list(self.outcome.failed_urls),
            "error": self.error,
        }


# ---------------- Single event loop helper for this module ------------------
_FETCH_LOOP: asyncio.AbstractEventLoop | None = None


def _run_in_fetch_loop(coro: "asyncio.coroutines.Coroutine"):
    global _FETCH_LOOP
    if _FETCH_LOOP is None or _FETCH_LOOP.is_closed():
        _FETCH_LOOP = asyncio.new_event_loop()
    return _FETCH_LOOP.run_until_complete(coro)


class StoryArchivePipeline:
    """Drive every archiving stage in order over one :class:`RunContext`."""

    def __init__(
        self,
        options: ArchiveOptions,
        *,
        fetcher: Optional[AssetFetcher] = None,
        post: Optional[PostFunc] = None,
    ) -> None:
        self.options = options
        self.post = post
        self.outcome = RunOutcome(max_errors=max(0, options.max_errors))
        self._video_warned = False
        if fetcher is None:
            downloader = None
            if options.archive_videos:
                executable = resolve_downloader(options.downloader)
                if executable:
                    downloader = VideoDownloader(executable)
            config = FetchConfig(
                concurrency=max(1, options.concurrency),
                retries=max(0, options.retries),
                timeout=options.timeout,
                backoff_initial=options.backoff_initial,
            )
            fetcher = AssetFetcher(config, video_downloader=downloader)
        self.fetcher = fetcher

    def stages(self) -> List[Tuple[str, Callable[[RunContext], None]]]:
        return [
            ("archive_story_images", self.archive_story_images),
            ("archive_misc_images", self.archive_misc_images),
            ("archive_story_css", self.archive_story_css),
            ("archive_html_elements", self.archive_html_elements),
            ("fetch_fixed_assets", self.fetch_fixed_assets),
            ("persist_story_json", self.persist_story_json),
            ("copy_static_resources", self.copy_static_resources),
            ("apply_css_scoping", self.apply_css_scoping),
            ("generate_asset_index", self.generate_asset_index),
            ("generate_title_file", self.generate_title_file),
            ("copy_build_assets", self.copy_build_assets),
        ]

    def run(self) -> PipelineResult:
        done: List[str] = []
        context: Optional[RunContext] = None
        try:
            context = resolve_archive(
                self.options.story_id,
                self.options.out_root,
                force_update=self.options.force_update,
                endpoint=self.options.endpoint,
                retries=self.options.retries,
                timeout=self.options.timeout,
                backoff=self.options.backoff_initial,
                post=self.post,
            )
            done.extend(["resolve_archive", "fetch_story_metadata"])
            for name, stage in self.stages():
                logger.debug("stage %s", name)
                stage(context)
                done.append(name)
                self._check_threshold(name)
        except StoryNotSpecifiedError as exc:
            return self._aborted(EXIT_NO_STORY, exc, context, done)
        except MetadataFetchError as exc:
            logger.error("%s", exc)
            return self._aborted(EXIT_METADATA, exc, context, done)
        except ErrorThresholdExceeded as exc:
            logger.error("%s; files fetched so far are kept", exc)
            return self._aborted(EXIT_THRESHOLD, exc, context, done)
        if self.outcome.failures:
            logger.warning(
                "archive completed with %d failed fetch(es); those references stay remote",
                self.outcome.failures,
            )
        return PipelineResult(
            state=PipelineState.COMPLETED,
            exit_code=EXIT_OK,
            outcome=self.outcome,
            context=context,
            stages=done,
        )

    def _aborted(
        self,
        code: int,
        exc: Exception,
        context: Optional[RunContext],
        done: List[str],
    ) -> PipelineResult:
        return PipelineResult(
            state=PipelineState.ABORTED,
            exit_code=code,
            outcome=self.outcome,
            context=context,
            stages=done,
            error=str(exc),
        )

    def _check_threshold(self, stage: str) -> None:
        if self.outcome.exceeded:
            raise ErrorThresholdExceeded(
                f"aborting after {stage}: {self.outcome.failures} failed fetch(es) "
                f"exceed the limit of {self.outcome.max_errors}"
            )

    # ------------------------------------------------------------------
    # Localization core shared by the archiving stages
    # ------------------------------------------------------------------

    def _task_for(self, context: RunContext, ref: AssetReference) -> Optional[FetchTask]:
        if ref.kind == KIND_VIDEO:
            if self.fetcher.video_downloader is None:
                if not self._video_warned:
                    logger.warning("no video downloader available; video links stay remote")
                    self._video_warned = True
                return None
            url = canonical_video_url(ref.url)
            destination = context.location.assets_dir / f"video-{youtube_video_id(url)}.mp4"
        else:
            url = ref.url
            destination = context.location.assets_dir / asset_filename(url)
        policy = POLICY_OVERWRITE if self.options.refresh_assets else POLICY_KEEP
        return FetchTask(
            url=url,
            destination=destination,
            policy=policy,
            retries=max(0, self.options.retries),
            kind=ref.kind,
        )

    def localize(self, context: RunContext, refs: List[AssetReference]) -> Dict[str, str]:
        """Fetch every reference and map its raw token to the local path of what landed on disk."""

        tasks: List[FetchTask] = []
        destinations: Dict[str, Path] = {}
        for ref in refs:
            task = self._task_for(context, ref)
            if task is None:
                continue
            try:
                context.claim(task.destination, task.url)
            except DestinationCollisionError as exc:
                logger.error("%s (%s)", exc, ref.location)
                self.outcome.record_failure(ref.url, str(exc))
                continue
            destinations.setdefault(ref.raw, task.destination)
            tasks.append(task)
        if not tasks or self.outcome.exceeded:
            return {}
        report: BatchReport = _run_in_fetch_loop(self.fetcher.fetch_many(tasks, self.outcome))
        landed = report.succeeded
        archive_dir = context.location.archive_dir
        return {
            raw: relative_posix(dest, archive_dir)
            for raw, dest in destinations.items()
            if dest in landed
        }

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def archive_story_images(self, context: RunContext) -> None:
        images = context.story.get(K_IMAGES)
        if not isinstance(images, list):
            return
        refs: List[AssetReference] = []
        for idx, image in enumerate(images):
            raw = image.get(K_URL) if isinstance(image, dict) else image
            if not isinstance(raw, str):
                continue
            url = resolve_reference(raw)
            if url:
                refs.append(AssetReference(location=f"{K_IMAGES}[{idx}]", url=url, raw=raw.strip()))
        mapping = self.localize(context, refs)
        for idx, image in enumerate(images):
            if isinstance(image, dict):
                raw = image.get(K_URL)
                if isinstance(raw, str) and raw.strip() in mapping:
                    image[K_URL] = mapping[raw.strip()]
            elif isinstance(image, str) and image.strip() in mapping:
                images[idx] = mapping[image.strip()]

    def archive_misc_images(self, context: RunContext) -> None:
        refs: List[AssetReference] = []
        for key in MISC_IMAGE_KEYS:
            raw = context.story.get(key)
            if isinstance(raw, str):
                url = resolve_reference(raw)
                if url:
                    refs.append(AssetReference(location=key, url=url, raw=raw.strip()))
        mapping = self.localize(context, refs)
        for key in MISC_IMAGE_KEYS:
            raw = context.story.get(key)
            if isinstance(raw, str) and raw.strip() in mapping:
                context.story[key] = mapping[raw.strip()]

    def archive_story_css(self, context: RunContext) -> None:
        css = context.story.get(K_CSS)
        if not isinstance(css, str) or not css:
            return
        mapping = self.localize(context, extract_css_references(css, K_CSS))
        context.story[K_CSS] = rewrite_references(css, mapping)

    def archive_html_elements(self, context: RunContext) -> None:
        elements = context.story.get(K_HTML_ELEMENTS)
        if not isinstance(elements, list):
            return
        refs: List[AssetReference] = []
        for idx, element in enumerate(elements):
            if isinstance(element, dict) and isinstance(element.get(K_HTML), str):
                refs.extend(extract_html_references(element[K_HTML], f"{K_HTML_ELEMENTS}[{idx}]"))
        mapping = self.localize(context, refs)
        if not mapping:
            return
        for element in elements:
            if isinstance(element, dict) and isinstance(element.get(K_HTML), str):
                element[K_HTML] = rewrite_html(element[K_HTML], mapping)

    def fetch_fixed_assets(self, context: RunContext) -> None:
        tasks: List[FetchTask] = []
        for asset in FIXED_ASSETS:
            destination = context.location.assets_dir / asset["filename"]
            try:
                context.claim(destination, asset["url"])
            except DestinationCollisionError as exc:
                logger.error("%s", exc)
                self.outcome.record_failure(asset["url"], str(exc))
                continue
            tasks.append(FetchTask(
                url=asset["url"],
                destination=destination,
                policy=POLICY_OVERWRITE if self.options.refresh_assets else POLICY_KEEP,
                retries=max(0, self.options.retries),
            ))
        if tasks and not self.outcome.exceeded:
            _run_in_fetch_loop(self.fetcher.fetch_many(tasks, self.outcome))

    def persist_story_json(self, context: RunContext) -> None:
        persist_story_json(context.story, context.location.archive_dir)

    def copy_static_resources(self, context: RunContext) -> None:
        copy_resources(STATIC_RESOURCES_DIR, context.location.archive_dir)

    def apply_css_scoping(self, context: RunContext) -> None:
        css = context.story.get(K_CSS)
        scoped = scope_css(css, CSS_SCOPE_SELECTOR) if isinstance(css, str) else ""
        write_scoped_css(context.location.archive_dir / SCOPED_CSS_FILE, scoped)

    def generate_asset_index(self, context: RunContext) -> None:
        write_asset_index(context.location.assets_dir, context.location.archive_dir)

    def generate_title_file(self, context: RunContext) -> None:
        write_title_file(context.location.archive_dir, context.title, context.url_title)

    def copy_build_assets(self, context: RunContext) -> None:
        copy_resources(BUILD_ASSETS_DIR, context.location.archive_dir)


def run_archive_pipeline(
    options: ArchiveOptions,
    *,
    fetcher: Optional[AssetFetcher] = None,
    post: Optional[PostFunc] = None,
) -> PipelineResult:
    return StoryArchivePipeline(options, fetcher=fetcher, post=post).run()
