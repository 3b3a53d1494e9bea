"""Transcode orchestrator: drives every reachable texture of a container through
decode -> resample -> encode -> substitute, then re-serializes the container.

Images of one document run on a thread pool; documents of a batch run on a
second pool. A failure is recorded on the image (or document) it belongs to
and never aborts its siblings.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from tqdm import tqdm

from . import __version__
from .config import PipelineConfig, TranscodeOptions
from .core.document import Document, decode_document
from .core.errors import (
    DecodeError,
    PipelineCancelledError,
    SerializationError,
    TranscodeError,
)
from .core.io import MIME_JPEG, decode_image, encode_image, target_mime_for
from .core.naming import dedupe_name, output_name_for, output_name_for_handle
from .core.records import (
    BatchReport,
    DocumentReport,
    ImageDefinition,
    ImageState,
    TextureHandle,
    TranscodeResult,
)
from .phases.resample import resample
from .phases.resolve import collect_texture_handles, correlate, slot_table

logger = logging.getLogger("texture_pipeline")

Inputs = Union[Mapping[str, bytes], Iterable[Tuple[str, bytes]]]


def _input_items(inputs: Inputs) -> List[Tuple[str, bytes]]:
    items = list(inputs.items()) if isinstance(inputs, Mapping) else list(inputs)
    names = [name for name, _ in items]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate input names: {names}")
    return items


def collect_outputs(batch: BatchReport) -> Union[Optional[bytes], Dict[str, bytes]]:
    """Single input -> its bytes (None if it failed); several -> name -> bytes.

    Failed documents are left out of the mapping; their error stays on the
    report.
    """
    if len(batch) == 1:
        return next(iter(batch.values())).output
    return {name: rep.output for name, rep in batch.items() if rep.output is not None}


class _ImageJob:
    """One planned transcode: a handle, its correlation and its result slot."""

    __slots__ = ("handle", "image_def", "result")

    def __init__(self, handle: TextureHandle, image_def: Optional[ImageDefinition],
                 result: TranscodeResult):
        self.handle = handle
        self.image_def = image_def
        self.result = result

    @property
    def source(self) -> str:
        if self.image_def is not None:
            return self.image_def.describe()
        return self.handle.describe()


class TexturePipeline:
    """Master orchestrator for container texture transcoding."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        progress_callback: Optional[Callable[[str, int, int], None]] = None,
    ):
        self.config = config if config is not None else PipelineConfig()
        self.config.validate()
        self._slots = slot_table(self.config.extra_texture_slots)
        self._progress_callback = progress_callback
        self._cancel_event = threading.Event()

    # ------------------------------------------
    # Helpers
    # ------------------------------------------

    def request_cancel(self):
        """Request cooperative cancellation.

        The flag stays set until the current (or next) batch run ends.
        """
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _check_cancel(self, where: str = ""):
        if self._cancel_event.is_set():
            suffix = f" during {where}" if where else ""
            raise PipelineCancelledError(f"Pipeline cancelled by user request{suffix}")

    def _report_progress(self, stage: str, done: int, total: int) -> None:
        done_i = int(done)
        total_i = max(int(total), 1)
        logger.debug("[progress] stage=%s done=%d total=%d", stage, done_i, total_i)
        if self._progress_callback is not None:
            try:
                self._progress_callback(stage, done_i, total_i)
            except Exception:
                logger.debug("Progress callback failed.", exc_info=True)

    def _progress_bar(self, total: int, desc: str):
        return tqdm(total=total, desc=desc, disable=not self.config.show_progress,
                    leave=False)

    # ------------------------------------------
    # Planning
    # ------------------------------------------

    def _plan(self, document: Document, report: DocumentReport) -> List[_ImageJob]:
        """Resolve, correlate and name every reachable handle, in walk order."""
        jobs: List[_ImageJob] = []
        taken: List[str] = []
        for handle in collect_texture_handles(document, self._slots):
            image_def = correlate(document, handle)
            if image_def is None:
                report.correlation_misses += 1
                if handle.payload is None:
                    logger.debug("[%s] Skipping %s: no association and no payload",
                                 document.name, handle.describe())
                    continue
                declared = handle.mime_type
            else:
                declared = image_def.mime_type or handle.mime_type
            target_mime = target_mime_for(declared)
            if image_def is not None:
                name = output_name_for(image_def, target_mime)
            else:
                name = output_name_for_handle(handle, target_mime)
            name = dedupe_name(name, taken)
            taken.append(name)
            result = TranscodeResult(
                output_name=name,
                target_mime=target_mime,
                image_index=image_def.index if image_def is not None else None,
            )
            jobs.append(_ImageJob(handle, image_def, result))
        return jobs

    # ------------------------------------------
    # Per-image state machine
    # ------------------------------------------

    def _transcode_one(self, document: Document, job: _ImageJob,
                       options: TranscodeOptions) -> TranscodeResult:
        result = job.result
        source = f"{document.name}:{job.source}"
        try:
            self._check_cancel(source)
            payload = job.handle.payload
            if payload is None:
                raise DecodeError("image payload is not embedded in the container",
                                  source=source)
            declared = (job.image_def.mime_type if job.image_def else None) \
                or job.handle.mime_type
            raster = decode_image(payload, declared, source=source,
                                  max_pixels=self.config.max_image_pixels)
            result.state = ImageState.DECODED
            result.source_size = (raster.shape[1], raster.shape[0])

            self._check_cancel(source)
            raster = resample(raster, options.scale_factor)
            result.state = ImageState.RESAMPLED
            result.output_size = (raster.shape[1], raster.shape[0])

            self._check_cancel(source)
            result.encoded_bytes = encode_image(raster, result.target_mime, options)
            result.state = ImageState.ENCODED

            if job.image_def is not None:
                self._check_cancel(source)
                document.substitute(job.image_def.index, result.encoded_bytes,
                                    result.target_mime)
                result.state = ImageState.SUBSTITUTED
        except PipelineCancelledError as exc:
            result.fail(str(exc))
            raise
        except TranscodeError as exc:
            result.fail(str(exc))
            logger.error("[%s] %s failed: %s", document.name, result.output_name, exc)
            return result

        if result.target_mime == MIME_JPEG:
            param = f"q={options.lossy_quality:.2f}"
        else:
            param = f"colors={options.palette_size}"
        logger.info(
            "[%s] %s %s %dx%d -> %dx%d (%s)%s",
            document.name, result.output_name, result.target_mime,
            result.source_size[0], result.source_size[1],
            result.output_size[0], result.output_size[1], param,
            "" if result.substituted else " [export only]",
        )
        return result

    def _run_images(self, document: Document, jobs: List[_ImageJob],
                    options: TranscodeOptions) -> None:
        stage = f"images:{document.name}"
        total = len(jobs)
        workers = min(self.config.max_workers, max(total, 1))

        if workers <= 1:
            with self._progress_bar(total, document.name) as pbar:
                for done, job in enumerate(jobs, 1):
                    try:
                        self._transcode_one(document, job, options)
                    except PipelineCancelledError:
                        for rest in jobs[done:]:
                            rest.result.fail("cancelled")
                        raise
                    except Exception as exc:
                        job.result.fail(str(exc))
                        logger.error(
                            "[%s] %s failed unexpectedly: %s",
                            document.name, job.result.output_name, exc,
                            exc_info=True,
                        )
                    pbar.update(1)
                    self._report_progress(stage, done, total)
            return

        executor = ThreadPoolExecutor(max_workers=workers,
                                      thread_name_prefix="texshrink-img")
        futures = {}
        abort: Optional[BaseException] = None
        try:
            futures = {
                executor.submit(self._transcode_one, document, job, options): job
                for job in jobs
            }
            pending = set(futures)
            done_count = 0
            with self._progress_bar(total, document.name) as pbar:
                while pending:
                    if self._cancel_event.is_set():
                        abort = PipelineCancelledError(
                            "Pipeline cancelled by user request"
                        )
                        break
                    done, pending = wait(pending, timeout=0.2,
                                         return_when=FIRST_COMPLETED)
                    for future in done:
                        job = futures[future]
                        try:
                            future.result()
                        except PipelineCancelledError as exc:
                            abort = exc
                        except Exception as exc:
                            job.result.fail(str(exc))
                            logger.error(
                                "[%s] %s failed unexpectedly: %s",
                                document.name, job.result.output_name, exc,
                                exc_info=True,
                            )
                        done_count += 1
                        pbar.update(1)
                        self._report_progress(stage, done_count, total)
                    if abort is not None:
                        break
        except BaseException:
            # Ctrl+C: running jobs stop at their next stage check, queued
            # ones never start.
            self.request_cancel()
            self._abandon(executor, futures, jobs)
            raise
        if abort is not None:
            self._abandon(executor, futures, jobs)
            raise abort
        executor.shutdown(wait=True)

    @staticmethod
    def _abandon(executor: ThreadPoolExecutor, futures, jobs: List[_ImageJob]) -> None:
        for future in futures:
            future.cancel()
        executor.shutdown(wait=False, cancel_futures=True)
        for job in jobs:
            if job.result.state is ImageState.PENDING:
                job.result.fail("cancelled")

    # ------------------------------------------
    # Entry points
    # ------------------------------------------

    def process_document(self, data: bytes, name: str = "model",
                         options: Optional[TranscodeOptions] = None,
                         serialize: bool = True) -> DocumentReport:
        """Transcode every reachable texture of one container.

        Args:
            data: GLB bytes.
            name: Label used for logs, reports and output naming.
            options: Transcode parameters; defaults to the configured ones.
            serialize: When False the container is not re-encoded and the
                report only carries the transcoded images (standalone export).

        Returns:
            DocumentReport. Decode and serialization failures are recorded
            on it rather than raised; cancellation is raised.
        """
        options = options if options is not None else self.config.options()
        report = DocumentReport(name=name)
        self._check_cancel(name)
        start = time.monotonic()

        try:
            document = decode_document(data, name=name)
        except DecodeError as exc:
            report.error = str(exc)
            logger.error("[%s] Cannot decode container: %s", name, exc)
            return report

        jobs = self._plan(document, report)
        report.results = [job.result for job in jobs]
        if report.correlation_misses:
            logger.debug("[%s] %d texture handle(s) without an image definition",
                         name, report.correlation_misses)
        if jobs:
            self._run_images(document, jobs, options)
        else:
            logger.info("[%s] No embedded textures reachable from the scene", name)

        if serialize:
            self._check_cancel(name)
            try:
                report.output = document.serialize()
            except SerializationError as exc:
                report.error = str(exc)
                logger.error("[%s] Serialization failed: %s", name, exc)

        logger.info(
            "[%s] %d/%d image(s) transcoded, %d substituted, %d failed (%.2fs)",
            name, report.succeeded, report.attempted, report.substituted,
            len(report.failed_images), time.monotonic() - start,
        )
        if serialize and report.output is not None:
            logger.info("[%s] %s -> %s", name, _format_bytes(len(data)),
                        _format_bytes(len(report.output)))
        return report

    def _run_documents(self, inputs: Inputs, options: Optional[TranscodeOptions],
                       serialize: bool) -> BatchReport:
        items = _input_items(inputs)
        batch = BatchReport((name, None) for name, _ in items)
        stage = "batch" if serialize else "export"

        logger.info("=" * 60)
        logger.info("TEXSHRINK v%s: %d container(s)", __version__, len(items))
        logger.info("=" * 60)

        def _guarded(name: str, data: bytes) -> DocumentReport:
            try:
                return self.process_document(data, name, options, serialize=serialize)
            except PipelineCancelledError:
                raise
            except Exception as exc:
                logger.error("[%s] Unexpected failure: %s", name, exc, exc_info=True)
                return DocumentReport(name=name, error=f"{type(exc).__name__}: {exc}")

        workers = min(self.config.document_workers, max(len(items), 1))
        try:
            if workers <= 1:
                for done, (name, data) in enumerate(items, 1):
                    self._check_cancel(name)
                    batch[name] = _guarded(name, data)
                    self._report_progress(stage, done, len(items))
            else:
                self._run_document_pool(items, batch, workers, stage, _guarded)
        finally:
            self._cancel_event.clear()

        failed = batch.failed
        if failed:
            logger.warning("%d of %d container(s) failed: %s",
                           len(failed), len(batch), ", ".join(failed))
        return batch

    def _run_document_pool(self, items, batch: BatchReport, workers: int,
                           stage: str, run_one) -> None:
        executor = ThreadPoolExecutor(max_workers=workers,
                                      thread_name_prefix="texshrink-doc")
        futures = {}
        try:
            futures = {
                executor.submit(run_one, name, data): name for name, data in items
            }
            pending = set(futures)
            done_count = 0
            while pending:
                self._check_cancel()
                done, pending = wait(pending, timeout=0.2,
                                     return_when=FIRST_COMPLETED)
                for future in done:
                    batch[futures[future]] = future.result()
                    done_count += 1
                    self._report_progress(stage, done_count, len(items))
        except BaseException:
            # Running documents see the cancel flag before it is cleared.
            self.request_cancel()
            for future in futures:
                future.cancel()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

    def run_batch(self, inputs: Inputs,
                  options: Optional[TranscodeOptions] = None) -> BatchReport:
        """Transcode and re-serialize each input independently."""
        return self._run_documents(inputs, options, serialize=True)

    def export_batch(self, inputs: Inputs,
                     options: Optional[TranscodeOptions] = None) -> BatchReport:
        """Transcode each input's textures for standalone export only."""
        return self._run_documents(inputs, options, serialize=False)


def _format_bytes(num_bytes: int) -> str:
    value = float(max(num_bytes, 0))
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024.0 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024.0
    return f"{value:.1f} GB"
