"""
Operation registry for in-flight attachment work.

Every request that needs asynchronous work on an attachment (fetching,
preparing, uploading) is expressed as a composite task: an ordered list of
stages that share one runner ``asyncio.Task``. The registry runs at most one
composite task per attachment id at a time. Later callers for the same
attachment join a live task that can serve them instead of starting duplicate
work. A request no live task can serve (an upload while a fetch or prepare is
running) is queued behind the live tasks for that attachment and starts once
they have finished. Every caller receives its task's terminal outcome exactly
once.

All registry state is touched on the event loop thread only. ``start_or_join``
performs lookup and insertion without awaiting in between, so concurrent
requests resolve deterministically to either "create" or "join".
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Generator, Iterable
from dataclasses import dataclass, field
from typing import Any

from chat_attachments.errors import (
    AttachmentError,
    InvalidTransitionError,
    OperationCancelledError,
)
from chat_attachments.interfaces import ProgressCallback
from chat_attachments.lifecycle import (
    FailureLog,
    OperationKind,
    TaskStage,
    state_for_stage,
    validate_transition,
)
from chat_attachments.models import (
    Attachment,
    AttachmentState,
    MediaInfo,
    RemoteRef,
    StoredPayload,
)
from chat_attachments.notifications import NotificationHub

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationKey:
    """Identifies the attachment, origin and kind of work of a request."""

    attachment_id: str
    message_id: str
    dialog_id: str | None = None
    kind: OperationKind = OperationKind.FETCH

    @property
    def identifier(self) -> str:
        return f"{self.message_id}/{self.attachment_id}"


@dataclass
class StageContext:
    """Mutable state shared by the stages of one composite task."""

    attachment: Attachment
    message_id: str
    dialog_id: str | None = None
    # Every message the task serves; shared with the task as it gains joiners
    message_ids: set[str] = field(default_factory=set)
    payload: StoredPayload | None = None
    data: bytes | None = None
    media_info: MediaInfo | None = None
    remote_ref: RemoteRef | None = None
    ack: Any = None
    from_cache: bool = False
    report_progress: ProgressCallback = field(default=lambda progress: None)


StageRunner = Callable[[StageContext], Awaitable[None]]


@dataclass(frozen=True)
class Stage:
    """Descriptor for one step of a composite task.

    Attributes:
        stage: Which step this is
        run: Coroutine function doing the work, mutating the shared context
        error_class: Error raised when ``run`` fails with a foreign exception
        skip_if: Predicate evaluated just before the stage would start
        required: Whether a failure fails the whole task
    """

    stage: TaskStage
    run: StageRunner
    error_class: type[AttachmentError] = AttachmentError
    skip_if: Callable[[StageContext], bool] | None = None
    required: bool = True


@dataclass
class OperationPlan:
    """What ``start_or_join`` builders return: the stages for a new task."""

    kind: OperationKind
    attachment: Attachment
    stages: list[Stage]


@dataclass
class OperationOutcome:
    """Terminal result of a composite task, shared by all of its callers."""

    identifier: str
    kind: OperationKind
    attachment: Attachment
    payload: StoredPayload | None = None
    media_info: MediaInfo | None = None
    remote_ref: RemoteRef | None = None
    ack: Any = None
    error: AttachmentError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, OperationCancelledError)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass
class Waiter:
    """A caller attached to a composite task."""

    future: asyncio.Future[OperationOutcome]
    message_id: str
    on_progress: ProgressCallback | None = None
    on_complete: Callable[[OperationOutcome], None] | None = None


@dataclass
class CompositeTask:
    """The unit of work tracked by the registry for one attachment id."""

    key: OperationKey
    plan: OperationPlan
    context: StageContext
    loop: asyncio.AbstractEventLoop
    state: AttachmentState = AttachmentState.NOT_LOADED
    waiters: list[Waiter] = field(default_factory=list)
    message_ids: set[str] = field(default_factory=set)
    dialog_ids: set[str] = field(default_factory=set)
    runner: asyncio.Task[None] | None = None
    current_stage: TaskStage | None = None
    progress: float = 0.0
    terminal: bool = False
    outcome: OperationOutcome | None = None
    # Runners of earlier tasks for the same attachment that must finish first
    waits_for: set[asyncio.Task[None]] = field(default_factory=set)

    @property
    def identifier(self) -> str:
        return self.key.identifier

    @property
    def attachment_id(self) -> str:
        return self.key.attachment_id

    @property
    def kind(self) -> OperationKind:
        return self.plan.kind

    def can_serve(self, key: OperationKey) -> bool:
        """Whether a request for ``key`` can share this task's outcome.

        Any task leaves the payload available locally, so fetch and prepare
        requests can join any of them. An upload request also sends its
        message and can only join an upload for that same message.
        """
        if key.kind is not OperationKind.UPLOAD:
            return True
        return (
            self.kind is OperationKind.UPLOAD
            and self.key.message_id == key.message_id
        )

    def cancel_hook(self) -> None:
        """Cancel whatever stage is still pending."""
        if self.runner is not None and not self.runner.done():
            self.runner.cancel()


class OperationHandle:
    """A caller's view of a composite task.

    Awaiting the handle returns the ``OperationOutcome`` or raises its error.
    Cancelling the handle cancels the task for every caller attached to it.
    """

    def __init__(
        self, registry: OperationRegistry, task: CompositeTask, waiter: Waiter
    ) -> None:
        self._registry = registry
        self._task = task
        self._waiter = waiter

    def __repr__(self) -> str:
        return f"OperationHandle({self.identifier!r}, kind={self.kind.value})"

    @property
    def identifier(self) -> str:
        return self._task.identifier

    @property
    def attachment_id(self) -> str:
        return self._task.attachment_id

    @property
    def kind(self) -> OperationKind:
        return self._task.kind

    @property
    def state(self) -> AttachmentState:
        return self._task.state

    def done(self) -> bool:
        return self._waiter.future.done()

    def outcome(self) -> OperationOutcome | None:
        return self._waiter.future.result() if self._waiter.future.done() else None

    def cancel(self) -> bool:
        if self._task.terminal:
            return False
        self._registry.cancel_task(self._task)
        return True

    async def wait(self) -> OperationOutcome:
        # Shielded so a caller giving up on waiting does not touch the task
        outcome = await asyncio.shield(self._waiter.future)
        outcome.raise_for_error()
        return outcome

    def __await__(self) -> Generator[Any, None, OperationOutcome]:
        return self.wait().__await__()


class OperationRegistry:
    """Tracks composite tasks keyed by attachment id."""

    def __init__(
        self,
        hub: NotificationHub,
        failures: FailureLog | None = None,
        stage_timeout_seconds: float | None = None,
    ) -> None:
        """
        Initialize the registry.

        Args:
            hub: Notification hub that receives state and progress events
            failures: Failure log updated when tasks fail
            stage_timeout_seconds: Optional upper bound for every stage
        """
        self.hub = hub
        self.failures = failures if failures is not None else FailureLog()
        self.stage_timeout_seconds = stage_timeout_seconds
        # Live tasks per attachment id; the first one is running, the rest wait
        self._tasks: dict[str, list[CompositeTask]] = {}
        # Runners that were cancelled but have not finished unwinding yet
        self._retiring: dict[str, set[asyncio.Task[None]]] = {}

    def __contains__(self, attachment_id: object) -> bool:
        return attachment_id in self._tasks

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._tasks.values())

    def get(self, attachment_id: str) -> CompositeTask | None:
        """The running task for ``attachment_id``, if any."""
        queue = self._tasks.get(attachment_id)
        return queue[0] if queue else None

    def queued(self, attachment_id: str) -> list[CompositeTask]:
        """Every live task for ``attachment_id``, running one first."""
        return list(self._tasks.get(attachment_id, ()))

    def active_identifiers(self) -> list[str]:
        return [task.identifier for task in self._live_tasks()]

    def _live_tasks(self) -> list[CompositeTask]:
        return [task for queue in self._tasks.values() for task in queue]

    def state_of(self, attachment_id: str) -> AttachmentState | None:
        """State of the running task for ``attachment_id``.

        Returns:
            The task's state once it has entered a transfer or preparation
            stage, otherwise None so callers derive the state from the
            failure log and the store
        """
        task = self.get(attachment_id)
        if task is None or task.terminal or not task.state.is_active:
            return None
        return task.state

    def start_or_join(
        self,
        key: OperationKey,
        build: Callable[[], OperationPlan],
        on_progress: ProgressCallback | None = None,
        on_complete: Callable[[OperationOutcome], None] | None = None,
    ) -> OperationHandle:
        """Attach to a live task for ``key.attachment_id`` or start a new one.

        A live task is joined only if it can serve the request (see
        ``CompositeTask.can_serve``). Otherwise the new task is queued and
        its stages start after every earlier task for the attachment has
        finished.

        Args:
            key: Attachment, message, dialog and kind of the request
            build: Called only when a new task is needed; returns its plan
            on_progress: Per-caller progress callback, fraction in [0, 1]
            on_complete: Per-caller completion callback

        Returns:
            A handle to the (possibly shared) task
        """
        loop = asyncio.get_running_loop()
        ahead = list(self._tasks.get(key.attachment_id, ()))
        for task in ahead:
            if task.terminal or not task.can_serve(key):
                continue
            waiter = self._attach(task, key, loop, on_progress, on_complete)
            logger.debug(
                f"Joined in-flight {task.kind.value} for attachment {key.attachment_id} "
                f"({len(task.waiters)} waiters)"
            )
            if key.message_id not in task.message_ids:
                task.message_ids.add(key.message_id)
                if task.state.is_active:
                    self.hub.emit_state_changed(
                        task.plan.attachment, key.message_id, task.state
                    )
            return OperationHandle(self, task, waiter)

        plan = build()
        initial_state = (
            AttachmentState.ERROR
            if key.attachment_id in self.failures
            else AttachmentState.NOT_LOADED
        )
        waits_for = {task.runner for task in ahead if task.runner is not None}
        waits_for |= self._retiring.get(key.attachment_id, set())

        context = StageContext(
            attachment=plan.attachment,
            message_id=key.message_id,
            dialog_id=key.dialog_id,
            message_ids={key.message_id},
        )
        task = CompositeTask(
            key=key,
            plan=plan,
            context=context,
            loop=loop,
            state=initial_state,
            message_ids=context.message_ids,
            waits_for=waits_for,
        )
        context.report_progress = self._progress_reporter(task)
        waiter = self._attach(task, key, loop, on_progress, on_complete)
        self._tasks.setdefault(key.attachment_id, []).append(task)
        task.runner = loop.create_task(
            self._run(task), name=f"attachment-{plan.kind.value}-{task.identifier}"
        )
        if ahead:
            logger.info(
                f"Queued {plan.kind.value} for attachment {key.attachment_id} "
                f"in message {key.message_id} behind "
                f"{', '.join(task.kind.value for task in ahead)}"
            )
        else:
            logger.info(
                f"Started {plan.kind.value} for attachment {key.attachment_id} "
                f"in message {key.message_id} "
                f"({', '.join(stage.stage.value for stage in plan.stages)})"
            )
        return OperationHandle(self, task, waiter)

    def _attach(
        self,
        task: CompositeTask,
        key: OperationKey,
        loop: asyncio.AbstractEventLoop,
        on_progress: ProgressCallback | None,
        on_complete: Callable[[OperationOutcome], None] | None,
    ) -> Waiter:
        waiter = Waiter(
            future=loop.create_future(),
            message_id=key.message_id,
            on_progress=on_progress,
            on_complete=on_complete,
        )
        task.waiters.append(waiter)
        if key.dialog_id is not None:
            task.dialog_ids.add(key.dialog_id)
        return waiter

    # --- Running ---

    async def _run(self, task: CompositeTask) -> None:
        try:
            pending = {runner for runner in task.waits_for if not runner.done()}
            if pending:
                logger.debug(
                    f"Waiting for {len(pending)} earlier operations on "
                    f"{task.attachment_id} to finish"
                )
                await asyncio.wait(pending)
            outcome = await self._execute(task)
        except asyncio.CancelledError:
            self._settle(
                task,
                error=OperationCancelledError(
                    f"Operation {task.identifier} was cancelled",
                    attachment_id=task.attachment_id,
                ),
            )
            raise
        except AttachmentError as e:
            self._settle(task, error=e)
        else:
            self._settle(task, outcome=outcome)

    async def _execute(self, task: CompositeTask) -> OperationOutcome:
        context = task.context
        for stage in task.plan.stages:
            if task.terminal:
                # Settled by a cancel while the previous stage was finishing
                raise asyncio.CancelledError
            if stage.skip_if is not None and stage.skip_if(context):
                logger.debug(f"Skipping {stage.stage.value} for {task.identifier}")
                continue
            self._enter_stage(task, stage.stage)
            try:
                if self.stage_timeout_seconds is not None:
                    await asyncio.wait_for(
                        stage.run(context), timeout=self.stage_timeout_seconds
                    )
                else:
                    await stage.run(context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = self._stage_error(task, stage, e)
                if stage.required:
                    logger.warning(
                        f"Stage {stage.stage.value} failed for {task.identifier}: {error}"
                    )
                    if error is e:
                        raise
                    raise error from e
                logger.info(
                    f"Ignoring non-fatal {stage.stage.value} failure for "
                    f"{task.identifier}: {error}"
                )
        return OperationOutcome(
            identifier=task.identifier,
            kind=task.kind,
            attachment=context.attachment,
            payload=context.payload,
            media_info=context.media_info,
            remote_ref=context.remote_ref,
            ack=context.ack,
        )

    def _stage_error(
        self, task: CompositeTask, stage: Stage, exc: Exception
    ) -> AttachmentError:
        if isinstance(exc, AttachmentError):
            error = exc
        elif isinstance(exc, TimeoutError):
            error = stage.error_class(
                f"{stage.stage.value} timed out after {self.stage_timeout_seconds}s",
                attachment_id=task.attachment_id,
                retryable=True,
            )
        else:
            error = stage.error_class(
                f"{stage.stage.value} failed: {exc}",
                attachment_id=task.attachment_id,
            )
        if error.stage is None:
            error.stage = stage.stage
        if error.attachment_id is None:
            error.attachment_id = task.attachment_id
        return error

    def _enter_stage(self, task: CompositeTask, stage: TaskStage) -> None:
        task.current_stage = stage
        self._transition(task, state_for_stage(stage, task.state))
        if task.state.is_active:
            # Active work supersedes the recorded failure
            self.failures.forget(task.attachment_id)

    def _transition(self, task: CompositeTask, target: AttachmentState) -> None:
        if target == task.state:
            return
        task.state = validate_transition(task.state, target, task.attachment_id)
        task.plan.attachment.state = target
        for message_id in sorted(task.message_ids):
            self.hub.emit_state_changed(task.plan.attachment, message_id, target)

    # --- Progress ---

    def _progress_reporter(self, task: CompositeTask) -> ProgressCallback:
        def report(progress: float) -> None:
            stage = task.current_stage
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            if current is task.loop:
                self._apply_progress(task, progress, stage)
            else:
                task.loop.call_soon_threadsafe(
                    self._apply_progress, task, progress, stage
                )

        return report

    def _apply_progress(
        self, task: CompositeTask, progress: float, stage: TaskStage | None
    ) -> None:
        if task.terminal:
            return
        progress = min(max(float(progress), 0.0), 1.0)
        # Progress never goes backwards within a task
        if progress <= task.progress:
            return
        task.progress = progress
        for waiter in list(task.waiters):
            if waiter.on_progress is None:
                continue
            try:
                waiter.on_progress(progress)
            except Exception as e:
                logger.error(
                    f"Progress callback failed for {task.identifier}: {e}",
                    exc_info=True,
                )
        for message_id in sorted(task.message_ids):
            self.hub.emit_progress(message_id, task.attachment_id, progress, stage)

    # --- Completion ---

    def _settle(
        self,
        task: CompositeTask,
        outcome: OperationOutcome | None = None,
        error: AttachmentError | None = None,
    ) -> bool:
        """Move a task to its terminal state and notify every waiter once.

        Returns:
            False if the task had already settled
        """
        if task.terminal:
            return False
        task.terminal = True
        queue = self._tasks.get(task.attachment_id, [])
        remaining = [other for other in queue if other is not task]
        if remaining:
            self._tasks[task.attachment_id] = remaining
        else:
            self._tasks.pop(task.attachment_id, None)

        attachment = task.plan.attachment
        if error is None:
            target = AttachmentState.LOADED
            attachment.error = None
            self.failures.forget(task.attachment_id)
            if task.context.payload is not None:
                attachment.payload_ref = task.context.payload.attachment_id
        elif isinstance(error, OperationCancelledError):
            target = (
                AttachmentState.LOADED
                if task.context.payload is not None
                else AttachmentState.NOT_LOADED
            )
        else:
            target = AttachmentState.ERROR
            attachment.error = error
            self.failures.record(
                task.attachment_id, error, task.message_ids, task.dialog_ids
            )

        if outcome is None:
            outcome = OperationOutcome(
                identifier=task.identifier,
                kind=task.kind,
                attachment=attachment,
                payload=task.context.payload,
                media_info=task.context.media_info,
                remote_ref=task.context.remote_ref,
                error=error,
            )
        task.outcome = outcome

        try:
            self._transition(task, target)
        except InvalidTransitionError as e:
            logger.error(f"Inconsistent terminal state for {task.identifier}: {e}")

        if error is None:
            logger.info(f"Completed {task.kind.value} for {task.identifier}")
        elif outcome.cancelled:
            logger.info(f"Cancelled {task.kind.value} for {task.identifier}")
        else:
            logger.warning(
                f"{task.kind.value} for {task.identifier} failed at "
                f"{error.stage.value if error.stage else 'unknown stage'}: {error}"
            )

        for waiter in list(task.waiters):
            self._resolve(task, waiter, outcome)
        return True

    def _resolve(
        self, task: CompositeTask, waiter: Waiter, outcome: OperationOutcome
    ) -> None:
        if not waiter.future.done():
            waiter.future.set_result(outcome)
        if waiter.on_complete is None:
            return
        try:
            waiter.on_complete(outcome)
        except Exception as e:
            logger.error(
                f"Completion callback failed for {task.identifier}: {e}", exc_info=True
            )

    # --- Cancellation ---

    def cancel(self, attachment_id: str) -> asyncio.Task[None] | None:
        """Cancel every live task for an attachment.

        Cancellation is global: every caller attached to the tasks receives
        ``OperationCancelledError``.

        Returns:
            The running task's cancelled runner, which may still be unwinding,
            or None if there was nothing to cancel
        """
        runners = [self.cancel_task(task) for task in self.queued(attachment_id)]
        return runners[0] if runners else None

    def cancel_task(self, task: CompositeTask) -> asyncio.Task[None] | None:
        if task.terminal:
            return None
        runner = task.runner
        self._settle(
            task,
            error=OperationCancelledError(
                f"Operation {task.identifier} was cancelled",
                attachment_id=task.attachment_id,
            ),
        )
        task.cancel_hook()
        if runner is None or runner.done():
            return None
        attachment_id = task.attachment_id
        self._retiring.setdefault(attachment_id, set()).add(runner)

        def forget(done: asyncio.Task[None]) -> None:
            retiring = self._retiring.get(attachment_id)
            if retiring is None:
                return
            retiring.discard(done)
            if not retiring:
                del self._retiring[attachment_id]

        runner.add_done_callback(forget)
        return runner

    def cancel_all_for_message(self, message_id: str) -> list[asyncio.Task[None]]:
        return self._cancel_matching(lambda task: message_id in task.message_ids)

    def cancel_all_for_messages(
        self, message_ids: Iterable[str]
    ) -> list[asyncio.Task[None]]:
        wanted = set(message_ids)
        return self._cancel_matching(lambda task: bool(task.message_ids & wanted))

    def cancel_all_for_dialog(self, dialog_id: str) -> list[asyncio.Task[None]]:
        return self._cancel_matching(lambda task: dialog_id in task.dialog_ids)

    def cancel_all(self) -> list[asyncio.Task[None]]:
        return self._cancel_matching(lambda task: True)

    def _cancel_matching(
        self, predicate: Callable[[CompositeTask], bool]
    ) -> list[asyncio.Task[None]]:
        runners = []
        for task in [task for task in self._live_tasks() if predicate(task)]:
            runner = self.cancel_task(task)
            if runner is not None:
                runners.append(runner)
        if runners:
            logger.info(f"Cancelled {len(runners)} attachment operations")
        return runners

    async def drain(self, runners: Iterable[asyncio.Task[None]] | None = None) -> None:
        """Wait until cancelled runners have finished unwinding.

        Args:
            runners: Runners to wait for; all retiring runners when None
        """
        if runners is not None:
            pending = set(runners)
        else:
            pending = set().union(*self._retiring.values())
        pending = {runner for runner in pending if not runner.done()}
        if pending:
            await asyncio.wait(pending)
