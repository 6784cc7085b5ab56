"""Execution engine: runs one script per child process under resource limits."""

import multiprocessing
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

import psutil
from loguru import logger
from pydantic import ValidationError

from codepage_sandbox.config import Settings, get_settings
from codepage_sandbox.domains.execution.models import (
    ApiCallRecord,
    ErrorKind,
    ExecutionConfig,
    ExecutionContext,
    ExecutionError,
    ExecutionJob,
    ExecutionResult,
)
from codepage_sandbox.domains.execution.services import (
    build_result,
    derived_metrics,
    infrastructure_error,
    limit_error,
    script_error,
)
from codepage_sandbox.domains.monitoring.models import MetricKind
from codepage_sandbox.exceptions import ConfigurationError
from codepage_sandbox.infrastructure.enforcement.monitor import ResourceMonitor
from codepage_sandbox.infrastructure.monitoring.system import ProcessMonitor
from codepage_sandbox.infrastructure.sandbox.mock_api import MockDataStore
from codepage_sandbox.infrastructure.sandbox.worker import run_script

REAP_TIMEOUT = 1.0


class ActiveRun:
    """Host-side handle of one in-flight execution."""

    def __init__(self, context: ExecutionContext, monitor: ResourceMonitor):
        self.context = context
        self.monitor = monitor
        self.cancel_requested = threading.Event()
        self.finished = False
        self.elapsed_ms: Optional[float] = None


class ExecutionEngine:
    """
    Runs untrusted scripts in spawned child processes.

    The child streams logs, API calls and its terminal outcome over a pipe;
    this side samples the child's memory, enforces the deadline and turns
    whatever happened into a single ExecutionResult.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        reporter: Any = None,
        metrics: Any = None,
        fixtures: Optional[MockDataStore] = None,
    ):
        self.settings = settings or get_settings()
        self.fixtures = fixtures if fixtures is not None else MockDataStore()
        self._reporter = reporter
        self._metrics = metrics
        self._mp = multiprocessing.get_context("spawn")
        self._active: Dict[str, ActiveRun] = {}
        self._lock = threading.Lock()

    # -- public API -----------------------------------------------------

    def execute(
        self,
        script_source: str,
        test_data: Any = None,
        config: Optional[Union[ExecutionConfig, Dict[str, Any]]] = None,
        project_id: str = "adhoc",
        version_id: str = "current",
    ) -> ExecutionResult:
        """
        Runs a script to completion or until a limit stops it.

        Never raises: script errors, limit violations and sandbox failures
        all end up in the returned result.
        """
        errors: List[ExecutionError] = []
        try:
            config = self._resolve_config(config)
        except ConfigurationError as e:
            config = ExecutionConfig.from_settings(self.settings)
            errors.append(infrastructure_error(str(e)))

        context = ExecutionContext(
            test_id=f"test-{uuid4().hex[:12]}",
            project_id=project_id,
            version_id=version_id,
            config=config,
        )
        run = ActiveRun(context, ResourceMonitor.start(config))
        execution_time_ms = 0.0

        if not errors:
            with self._lock:
                self._active[context.test_id] = run
            logger.info(f"Starting execution {context.test_id} for {project_id}/{version_id}")
            try:
                errors = self._run(run, script_source, test_data)
            except Exception as e:
                logger.exception(f"Sandbox failure in {context.test_id}: {e}")
                errors = [infrastructure_error(f"Sandbox failure: {e}")]
            finally:
                execution_time_ms = run.elapsed_ms if run.elapsed_ms is not None else run.monitor.elapsed()
                with self._lock:
                    self._active.pop(context.test_id, None)

        result = build_result(context, execution_time_ms, errors)
        logger.info(
            f"Execution {result.id} finished: {result.status.value} in "
            f"{result.execution_time_ms:.0f}ms ({result.api_call_count} API calls, "
            f"{len(result.errors)} errors)"
        )
        self._publish(result, config)
        return result

    def execute_many(
        self,
        jobs: Iterable[Union[ExecutionJob, Dict[str, Any]]],
        max_workers: Optional[int] = None,
    ) -> List[ExecutionResult]:
        """Runs jobs concurrently on a thread pool. Results keep the job order."""
        jobs = [job if isinstance(job, ExecutionJob) else ExecutionJob(**job) for job in jobs]
        if not jobs:
            return []

        workers = max_workers or self.settings.max_concurrent_executions
        logger.info(f"Running {len(jobs)} executions with {workers} workers")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="codepage-exec") as pool:
            futures = [
                pool.submit(
                    self.execute,
                    job.script_source,
                    job.test_data,
                    job.config,
                    job.project_id,
                    job.version_id,
                )
                for job in jobs
            ]
            return [future.result() for future in futures]

    def active_executions(self) -> List[ExecutionContext]:
        with self._lock:
            runs = list(self._active.values())
        return [run.context.model_copy(deep=True) for run in runs]

    def cancel(self, test_id: str) -> bool:
        """Requests cancellation of a running execution. False if it is not running."""
        with self._lock:
            run = self._active.get(test_id)
        if run is None:
            return False
        run.cancel_requested.set()
        logger.info(f"Cancellation requested for {test_id}")
        return True

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            runs = list(self._active.values())
        elapsed = [run.monitor.elapsed() for run in runs]
        return {
            "active_executions": len(runs),
            "fixture_sets": len(self.fixtures),
            "average_execution_time_ms": sum(elapsed) / len(elapsed) if elapsed else 0.0,
        }

    # -- internals ------------------------------------------------------

    def _resolve_config(self, config: Optional[Union[ExecutionConfig, Dict[str, Any]]]) -> ExecutionConfig:
        if isinstance(config, ExecutionConfig):
            return config
        try:
            return ExecutionConfig.from_settings(self.settings, **(config or {}))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid execution config: {e}") from e

    def _run(self, run: ActiveRun, source: str, test_data: Any) -> List[ExecutionError]:
        config = run.context.config
        limits = {
            "timeout_ms": config.timeout_ms,
            "memory_limit_bytes": config.memory_limit_bytes,
            "api_call_limit": config.api_call_limit,
        }
        conn, child_conn = self._mp.Pipe(duplex=False)
        process = self._mp.Process(
            target=run_script,
            args=(child_conn, source, test_data, self.fixtures.snapshot(), limits, self.settings.mock_latency_scale),
            name=f"codepage-{run.context.test_id}",
            daemon=True,
        )
        try:
            process.start()
        except Exception as e:
            logger.error(f"Failed to start sandbox process for {run.context.test_id}: {e}")
            conn.close()
            return [infrastructure_error(f"Failed to start sandbox process: {e}")]
        finally:
            # the child holds its own copy; EOF is only seen once ours is closed
            child_conn.close()

        try:
            return self._supervise(run, process, conn)
        finally:
            self._reap(process, wait=run.finished)
            conn.close()

    def _supervise(self, run: ActiveRun, process, conn) -> List[ExecutionError]:
        context = run.context
        monitor = run.monitor
        interval = self.settings.monitor_interval
        try:
            memory = ProcessMonitor(process.pid)
        except psutil.NoSuchProcess:
            memory = None

        errors: List[ExecutionError] = []
        next_sample = 0.0

        while not run.finished and monitor.violation is None:
            if run.cancel_requested.is_set():
                monitor.flag(ErrorKind.CANCELLED.value)
                break
            if monitor.is_expired():
                break

            now = time.monotonic()
            if memory is not None and now >= next_sample:
                next_sample = now + interval
                rss = memory.memory_bytes()
                if rss is not None:
                    context.add_memory_sample(rss)
                    if not monitor.sample_memory(rss):
                        break

            if not conn.poll(min(interval, monitor.remaining())):
                continue
            try:
                kind, payload = conn.recv()
            except EOFError:
                process.join(REAP_TIMEOUT)
                logger.error(f"Sandbox process for {context.test_id} exited without a result "
                             f"(exit code {process.exitcode})")
                errors = [infrastructure_error(
                    f"Sandbox process exited unexpectedly (exit code {process.exitcode})")]
                break

            if kind == "log":
                context.logs.append(payload)
            elif kind == "api_call":
                context.api_calls.append(ApiCallRecord(**payload))
                logger.debug(f"{context.test_id} API call {payload['method']} "
                             f"({payload['duration_ms']:.1f}ms)")
            elif kind == "limit":
                monitor.flag(payload)
            elif kind == "error":
                errors = [script_error(payload)]
                run.finished = True
            elif kind == "done":
                context.add_memory_sample(payload["rss"])
                monitor.sample_memory(payload["rss"])
                run.finished = True

        run.elapsed_ms = monitor.elapsed()
        if monitor.violation is not None:
            kind = ErrorKind(monitor.violation)
            logger.warning(f"Execution {context.test_id} stopped: {kind.value}")
            return [limit_error(kind, context)]
        return errors

    def _reap(self, process, wait: bool = False) -> None:
        """Lets a finished child exit; terminates, then kills, anything else."""
        if wait:
            process.join(REAP_TIMEOUT)
        if process.is_alive():
            process.terminate()
            process.join(REAP_TIMEOUT)
        if process.is_alive():
            logger.warning(f"Sandbox process {process.pid} ignored SIGTERM, killing")
            process.kill()
            process.join(REAP_TIMEOUT)

    def _publish(self, result: ExecutionResult, config: ExecutionConfig) -> None:
        if self._reporter is not None:
            try:
                self._reporter.record(result)
            except Exception as e:
                logger.error(f"Failed to record result {result.id} for reporting: {e}")

        if self._metrics is None:
            return

        metadata = {
            "project_id": result.project_id,
            "version_id": result.version_id,
            "environment": config.environment.value,
            "test_id": result.id,
            "status": result.status.value,
        }
        try:
            for name, value, unit in derived_metrics(result):
                self._metrics.record_value(MetricKind.EXECUTION, name, value, unit, metadata)
            for call in result.api_calls:
                self._metrics.record_value(
                    MetricKind.API_RESPONSE,
                    "api_response_time",
                    call.duration_ms,
                    "ms",
                    {"method": call.method, "test_id": result.id, "project_id": result.project_id},
                )
        except Exception as e:
            logger.error(f"Failed to record metrics for {result.id}: {e}")
