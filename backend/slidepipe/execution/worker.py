"""
Conversion worker.

Executes one admitted job to a terminal state.

Per-attempt protocol:
    1. running, JobStarted, progress reporter on
    2. engine stages under the conversion timeout
    3. success and verified .dzi -> promote, completed, JobCompleted
    4. failure -> retrying + JobRetry + backoff, or failed + JobFailed
    5. cancellation at any point -> kill group, cancelled, JobCancelled

Rules:
- Cancellation wins over retry
- Permanent pre-flight errors never reach the engine
- The fallback engine runs at most once per job and costs no attempt
- Exactly one terminal event per job
"""

import logging
import time
from pathlib import Path
from typing import Optional

from ..config import PipelineSettings, RetryPolicy
from ..jobs.models import ConversionJob, JobState
from ..jobs.state import transition
from ..monitor.events import PipelineEvent
from ..monitor.publisher import EventPublisher, NullPublisher
from ..watchfolders.scanner import FileScanner
from .artifacts import JobArtifacts
from .base import ConversionEngine, ConversionRequest
from .errors import (
    ConversionCancelled,
    ConversionError,
    EngineExecutionError,
    EngineTimeoutError,
    PreFlightCheckError,
    StructuralIncompatibilityError,
)
from .process import ProcessSupervisor
from .progress import ProgressReporter, ProgressTracker

logger = logging.getLogger(__name__)


class ConversionWorker:
    """
    Runs jobs against the primary engine with retry, fallback and
    cancellation. Stateless between jobs; one instance serves every pool
    thread.

    Args:
        settings: Pipeline settings (timeouts, output dir, retry policy)
        primary: Engine used for every attempt
        fallback: Engine tried once when the primary cannot read the source
        supervisor: Process runner (default: built from settings)
        publisher: Event sink
    """

    def __init__(
        self,
        settings: PipelineSettings,
        primary: ConversionEngine,
        fallback: Optional[ConversionEngine] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.settings = settings
        self.primary = primary
        self.fallback = fallback
        self.supervisor = supervisor or ProcessSupervisor(kill_grace=settings.kill_grace)
        self._publisher = publisher or NullPublisher()
        self._scanner = FileScanner()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.settings.retry_policy

    # =========================================================================
    # Entry point
    # =========================================================================

    def run(self, job: ConversionJob) -> None:
        """
        Drive `job` to a terminal state. Never raises.

        Unexpected errors fail the job so its terminal event is still
        published.
        """
        try:
            self._execute(job)
        except Exception as e:
            logger.exception(f"[Worker] Unexpected error in job {job.id}")
            if not job.is_terminal:
                self._fail(job, f"Internal error: {e}")

    def _execute(self, job: ConversionJob) -> None:
        token = job.token

        if token.cancelled:
            self._cancel(job)
            return

        try:
            self.preflight(job)
        except PreFlightCheckError as e:
            logger.error(f"[Worker] Job {job.id} pre-flight failed: {e}")
            self._fail(job, str(e))
            return

        artifacts = JobArtifacts(
            self.settings.resolved_output_dir, job.output_name, self.settings.temp_dir
        )

        while True:
            if token.cancelled:
                self._cancel(job)
                return

            job.attempt += 1
            transition(job, JobState.RUNNING)
            job.engine = self.primary.name
            self._publish(
                PipelineEvent.job_started(
                    job.id, job.source_path, job.attempt, job.max_attempts, self.primary.name
                )
            )
            logger.info(
                f"[Worker] Job {job.id} attempt {job.attempt}/{job.max_attempts}: "
                f"{Path(job.source_path).name}"
            )

            error: Optional[str] = None
            try:
                output_path = self._attempt(job, artifacts)
            except ConversionCancelled:
                self._cancel(job)
                return
            except ConversionError as e:
                error = str(e)
                logger.warning(f"[Worker] Job {job.id} attempt {job.attempt} failed: {error}")
            else:
                self._complete(job, output_path)
                return

            if token.cancelled:
                self._cancel(job)
                return

            if job.attempt >= job.max_attempts:
                self._fail(job, error)
                return

            delay_ms = self.retry_policy.delay_ms(job.attempt)
            job.last_error = error
            transition(job, JobState.RETRYING)
            self._publish(
                PipelineEvent.job_retry(job.id, job.attempt, job.max_attempts, delay_ms, error)
            )
            logger.info(f"[Worker] Job {job.id} retrying in {delay_ms / 1000:.1f}s")

            if token.wait(delay_ms / 1000.0):
                self._cancel(job)
                return

    # =========================================================================
    # Pre-flight
    # =========================================================================

    def preflight(self, job: ConversionJob) -> None:
        """
        Checks that no retry can fix.

        Raises:
            PreFlightCheckError: Source missing, zero bytes, or unsupported
        """
        source = Path(job.source_path)
        if source.suffix.lower() not in self._scanner.SLIDE_EXTENSIONS:
            raise PreFlightCheckError(f"Unsupported file type: {source.suffix or source.name}")
        if not source.is_file():
            raise PreFlightCheckError(f"Source file missing: {source}")
        try:
            size = source.stat().st_size
        except OSError as e:
            raise PreFlightCheckError(f"Source file unreadable: {e}") from e
        if size == 0:
            raise PreFlightCheckError(f"Source file is zero bytes: {source.name}")

    # =========================================================================
    # Attempt
    # =========================================================================

    def _attempt(self, job: ConversionJob, artifacts: JobArtifacts) -> str:
        """
        One attempt, including the one-time fallback.

        Returns:
            Final descriptor path

        Raises:
            ConversionCancelled, EngineExecutionError, OutputVerificationError
        """
        artifacts.prepare()
        tracker = ProgressTracker(job.id, tile_size=self.settings.tile_size)
        reporter = ProgressReporter(
            tracker,
            self._publisher,
            interval=self.settings.progress_interval,
            is_running=lambda: job.state == JobState.RUNNING,
            token=job.token,
        )
        deadline = time.monotonic() + self.settings.conversion_timeout

        reporter.start()
        try:
            try:
                self._run_engine(self.primary, job, artifacts, tracker, deadline)
            except StructuralIncompatibilityError as e:
                if self.fallback is None or job.fallback_used:
                    raise
                logger.warning(
                    f"[Worker] Job {job.id}: {self.primary.name} cannot read source ({e}), "
                    f"trying {self.fallback.name}"
                )
                job.fallback_used = True
                job.engine = self.fallback.name
                artifacts.discard_staging()
                artifacts.remove_intermediates()
                self._run_engine(self.fallback, job, artifacts, tracker, deadline)

            artifacts.verify_staging()
        except ConversionError:
            artifacts.discard_staging()
            raise
        finally:
            reporter.stop()
            artifacts.remove_intermediates()

        if job.token.cancelled:
            artifacts.discard_staging()
            raise ConversionCancelled(job.id)

        return str(artifacts.promote())

    def _run_engine(
        self,
        engine: ConversionEngine,
        job: ConversionJob,
        artifacts: JobArtifacts,
        tracker: ProgressTracker,
        deadline: float,
    ) -> None:
        request = ConversionRequest(
            job_id=job.id,
            source_path=job.source_path,
            output_prefix=str(artifacts.staging_prefix),
            intermediate_path=str(artifacts.intermediate),
        )

        for stage in engine.build_stages(request):
            if job.token.cancelled:
                raise ConversionCancelled(job.id)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise EngineTimeoutError(engine.name, self.settings.conversion_timeout)

            tracker.begin_stage(stage)
            logger.info(f"[Worker] Job {job.id} {engine.name}: {stage.name}")
            result = self.supervisor.run(
                stage.argv, timeout=remaining, token=job.token, on_line=tracker.feed_line
            )

            if result.cancelled:
                raise ConversionCancelled(job.id)
            if result.timed_out:
                raise EngineTimeoutError(engine.name, self.settings.conversion_timeout)
            if result.exit_code != 0:
                message = f"{stage.name} exited with code {result.exit_code}"
                if engine.is_structural_failure(result.stderr_text):
                    raise StructuralIncompatibilityError(
                        engine.name, message, result.exit_code, result.stderr_text
                    )
                raise EngineExecutionError(
                    engine.name, message, result.exit_code, result.stderr_text
                )

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def _complete(self, job: ConversionJob, output_path: str) -> None:
        duration_ms = job.elapsed_ms()
        job.output_path = output_path
        job.last_error = None
        transition(job, JobState.COMPLETED)
        logger.info(f"[Worker] Job {job.id} completed in {duration_ms / 1000:.1f}s: {output_path}")
        self._publish(
            PipelineEvent.job_completed(
                job.id, job.source_path, output_path, duration_ms, job.engine or self.primary.name
            )
        )

    def _fail(self, job: ConversionJob, error: Optional[str]) -> None:
        job.last_error = error or "Conversion failed"
        transition(job, JobState.FAILED)
        logger.error(f"[Worker] Job {job.id} failed after {job.attempt} attempt(s): {job.last_error}")
        self._publish(
            PipelineEvent.job_failed(job.id, job.source_path, job.last_error, job.attempt)
        )

    def _cancel(self, job: ConversionJob) -> None:
        job.cancel_requested = True
        transition(job, JobState.CANCELLED)
        logger.info(f"[Worker] Job {job.id} cancelled")
        self._publish(PipelineEvent.job_cancelled(job.id, job.source_path))

    def _publish(self, event: PipelineEvent) -> None:
        try:
            self._publisher.publish(event)
        except Exception:
            logger.exception("[Worker] Publisher raised")
