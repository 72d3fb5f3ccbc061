"""Parallel customization of a mounted image.

All tasks are started together on a thread pool and the coordinator always
waits for every one of them to return. A task that overruns its deadline has
its cancel event set and is reported as failed; it keeps running until it
reaches a checkpoint, because killing a thread mid-write could leave the
image corrupt.

Tasks are assumed to write disjoint subtrees. The orchestrator checks that
when it plans the task list; the coordinator does not detect conflicts.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path

from winpe_imagegen.builds.tasks import CustomizationTask, TaskContext
from winpe_imagegen.errors import AggregateError, TaskCancelledError, TaskTimeoutError
from winpe_imagegen.mount.engine import ImageEngine
from winpe_imagegen.mount.session import MountSession
from winpe_imagegen.types import MountState, TaskResult

logger = logging.getLogger(__name__)

# How often deadlines are checked while tasks run
POLL_INTERVAL = 0.5

# Interval between warnings about a cancelled task that has not stopped yet
STRAGGLER_WARN_INTERVAL = 30.0


class ParallelTaskCoordinator:
    """Run customization tasks concurrently against one mount session."""

    def __init__(
        self,
        engine: ImageEngine,
        scratch_root: Path,
        poll_interval: float = POLL_INTERVAL,
        straggler_warn_interval: float = STRAGGLER_WARN_INTERVAL,
    ) -> None:
        self.engine = engine
        self.scratch_root = scratch_root
        self.poll_interval = poll_interval
        self.straggler_warn_interval = straggler_warn_interval

    def run_all(
        self,
        session: MountSession,
        tasks: list[CustomizationTask],
        task_timeout: float,
    ) -> list[TaskResult]:
        """Run all tasks and wait for every one to finish.

        Args:
            session: A live, mounted session.
            tasks: Tasks writing disjoint subtrees of the mount.
            task_timeout: Per-task deadline in seconds.

        Returns:
            One TaskResult per task, in task order, when all succeeded.

        Raises:
            ValueError: If the session is not mounted.
            AggregateError: If any task failed, timed out or was cancelled.
        """
        if not session.holds_lock or session.state != MountState.MOUNTED:
            raise ValueError(
                f"Cannot customize {session.image_path}: session is {session.state.value}"
            )
        if not tasks:
            return []

        logger.info(
            "Starting %d customization task(s): %s",
            len(tasks),
            ", ".join(t.name for t in tasks),
        )

        contexts: dict[str, TaskContext] = {}
        timed_out: set[str] = set()
        started = time.monotonic()

        executor = ThreadPoolExecutor(
            max_workers=len(tasks), thread_name_prefix="customize"
        )
        futures: dict[Future[TaskResult], CustomizationTask] = {}
        try:
            for task in tasks:
                scratch_dir = self.scratch_root / task.name
                scratch_dir.mkdir(parents=True, exist_ok=True)
                context = TaskContext(
                    mount_dir=session.mount_dir,
                    engine=self.engine,
                    scratch_dir=scratch_dir,
                    cancel_event=threading.Event(),
                    deadline=started + task_timeout,
                )
                contexts[task.name] = context
                futures[executor.submit(self._run_task, task, context)] = task

            pending: set[Future[TaskResult]] = set(futures)
            last_warning = started
            while pending:
                done, pending = wait(
                    pending, timeout=self.poll_interval, return_when=FIRST_COMPLETED
                )
                for future in done:
                    result = future.result()
                    logger.info(
                        "Task %s finished (success=%s, %.1fs)",
                        result.name,
                        result.success,
                        result.duration_seconds,
                    )

                now = time.monotonic()
                for future in pending:
                    task = futures[future]
                    if task.name in timed_out:
                        continue
                    deadline = contexts[task.name].deadline
                    if deadline is not None and now >= deadline:
                        logger.warning(
                            "Task %s exceeded %gs; requesting cancellation",
                            task.name,
                            task_timeout,
                        )
                        timed_out.add(task.name)
                        contexts[task.name].cancel_event.set()

                stragglers = [futures[f].name for f in pending if futures[f].name in timed_out]
                if stragglers and now - last_warning >= self.straggler_warn_interval:
                    logger.warning(
                        "Still waiting for cancelled task(s) to reach a checkpoint: %s",
                        ", ".join(stragglers),
                    )
                    last_warning = now
        finally:
            executor.shutdown(wait=True)

        results: list[TaskResult] = []
        for future, task in futures.items():
            result = future.result()
            if task.name in timed_out:
                result = TaskResult(
                    name=task.name,
                    success=False,
                    duration_seconds=result.duration_seconds,
                    error=str(
                        TaskTimeoutError(
                            f"Task {task.name} exceeded its {task_timeout:g}s timeout"
                        )
                    ),
                    error_type=TaskTimeoutError.__name__,
                    cancelled=result.cancelled,
                )
            results.append(result)

        failed = [r for r in results if not r.success]
        if failed:
            for r in failed:
                logger.error("Task %s failed: %s", r.name, r.error)
            raise AggregateError(results)

        logger.info(
            "All %d customization task(s) succeeded in %.1fs",
            len(results),
            time.monotonic() - started,
        )
        return results

    @staticmethod
    def _run_task(task: CustomizationTask, context: TaskContext) -> TaskResult:
        started = time.monotonic()
        try:
            context.checkpoint()
            task.run(context)
        except TaskCancelledError as e:
            return TaskResult(
                name=task.name,
                success=False,
                duration_seconds=time.monotonic() - started,
                error=str(e),
                error_type=type(e).__name__,
                cancelled=True,
            )
        except Exception as e:
            logger.debug("Task %s raised", task.name, exc_info=True)
            return TaskResult(
                name=task.name,
                success=False,
                duration_seconds=time.monotonic() - started,
                error=str(e),
                error_type=type(e).__name__,
            )
        return TaskResult(
            name=task.name,
            success=True,
            duration_seconds=time.monotonic() - started,
        )


__all__ = ["ParallelTaskCoordinator"]
