"""Tests for the operation registry and composite task execution."""

from __future__ import annotations

import asyncio

import pytest

from chat_attachments.errors import (
    AttachmentError,
    MediaInfoError,
    OperationCancelledError,
    StoreError,
)
from chat_attachments.lifecycle import FailureLog, OperationKind, TaskStage
from chat_attachments.models import Attachment, AttachmentKind, AttachmentState
from chat_attachments.notifications import NotificationHub
from chat_attachments.operations import (
    OperationKey,
    OperationPlan,
    OperationRegistry,
    Stage,
    StageContext,
)
from tests.mocks.adapters import RecordingObserver


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def registry(hub: NotificationHub) -> OperationRegistry:
    return OperationRegistry(hub)


def plan_of(*stages: Stage, attachment_id: str = "a1") -> OperationPlan:
    return OperationPlan(
        kind=OperationKind.FETCH,
        attachment=Attachment(id=attachment_id, kind=AttachmentKind.FILE),
        stages=list(stages),
    )


async def noop(context: StageContext) -> None:
    return None


class TestStartOrJoin:
    """Tests for deduplication in start_or_join."""

    @pytest.mark.asyncio
    async def test_builds_plan_only_for_new_task(
        self, registry: OperationRegistry
    ) -> None:
        release = asyncio.Event()
        builds: list[int] = []

        async def wait(context: StageContext) -> None:
            await release.wait()

        def build() -> OperationPlan:
            builds.append(1)
            return plan_of(Stage(TaskStage.DOWNLOAD, wait))

        first = registry.start_or_join(OperationKey("a1", "m1"), build)
        second = registry.start_or_join(OperationKey("a1", "m2"), build)

        assert builds == [1]
        assert "a1" in registry
        assert len(registry) == 1
        assert first.identifier == "m1/a1"
        assert second.identifier == "m1/a1"
        assert registry.active_identifiers() == ["m1/a1"]

        release.set()
        assert await first is await second
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_completed_task_is_not_joined(
        self, registry: OperationRegistry
    ) -> None:
        runs: list[str] = []

        async def record(context: StageContext) -> None:
            runs.append(context.message_id)

        def build() -> OperationPlan:
            return plan_of(Stage(TaskStage.DOWNLOAD, record))

        await registry.start_or_join(OperationKey("a1", "m1"), build)
        await registry.start_or_join(OperationKey("a1", "m2"), build)

        assert runs == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_state_of_reports_current_stage(
        self, registry: OperationRegistry
    ) -> None:
        release = asyncio.Event()
        entered = asyncio.Event()

        async def wait(context: StageContext) -> None:
            entered.set()
            await release.wait()

        handle = registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(Stage(TaskStage.UPLOAD, wait)),
        )
        await entered.wait()

        assert registry.state_of("a1") is AttachmentState.UPLOADING
        assert handle.state is AttachmentState.UPLOADING
        assert registry.state_of("other") is None

        release.set()
        await handle
        assert registry.state_of("a1") is None

    @pytest.mark.asyncio
    async def test_state_of_is_none_until_work_starts(
        self, registry: OperationRegistry
    ) -> None:
        release = asyncio.Event()
        entered = asyncio.Event()

        async def lookup(context: StageContext) -> None:
            entered.set()
            await release.wait()

        handle = registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(
                Stage(TaskStage.STORE_LOOKUP, lookup), Stage(TaskStage.DOWNLOAD, noop)
            ),
        )
        assert registry.state_of("a1") is None
        await entered.wait()

        assert registry.state_of("a1") is None
        assert handle.state is AttachmentState.NOT_LOADED

        release.set()
        await handle

    @pytest.mark.asyncio
    async def test_upload_request_waits_behind_fetch(
        self, registry: OperationRegistry
    ) -> None:
        release = asyncio.Event()
        entered = asyncio.Event()
        order: list[str] = []
        builds: list[str] = []

        async def fetch(context: StageContext) -> None:
            order.append("fetch")
            entered.set()
            await release.wait()

        async def upload(context: StageContext) -> None:
            order.append(f"upload {sorted(context.message_ids)}")

        def build_upload() -> OperationPlan:
            builds.append("upload")
            return OperationPlan(
                kind=OperationKind.UPLOAD,
                attachment=Attachment(id="a1", kind=AttachmentKind.FILE),
                stages=[Stage(TaskStage.UPLOAD, upload)],
            )

        fetching = registry.start_or_join(
            OperationKey("a1", "m1"), lambda: plan_of(Stage(TaskStage.DOWNLOAD, fetch))
        )
        await entered.wait()
        upload_key = OperationKey("a1", "m2", kind=OperationKind.UPLOAD)
        uploading = registry.start_or_join(upload_key, build_upload)
        # Same message and kind joins the waiting upload
        again = registry.start_or_join(upload_key, build_upload)
        # A fetch can be served by the running fetch
        joined = registry.start_or_join(
            OperationKey("a1", "m3"), lambda: plan_of(Stage(TaskStage.DOWNLOAD, noop))
        )

        assert builds == ["upload"]
        assert uploading.kind is OperationKind.UPLOAD
        assert again.identifier == "m2/a1"
        assert joined.identifier == "m1/a1"
        assert registry.active_identifiers() == ["m1/a1", "m2/a1"]
        assert len(registry) == 2
        assert order == ["fetch"]

        release.set()
        assert (await fetching).kind is OperationKind.FETCH
        assert (await uploading).kind is OperationKind.UPLOAD
        assert await again is await uploading

        assert order == ["fetch", "upload ['m2']"]
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_upload_for_other_message_is_not_joined(
        self, registry: OperationRegistry
    ) -> None:
        sent: list[str] = []

        async def send(context: StageContext) -> None:
            sent.append(context.message_id)

        def build() -> OperationPlan:
            return OperationPlan(
                kind=OperationKind.UPLOAD,
                attachment=Attachment(id="a1", kind=AttachmentKind.FILE),
                stages=[Stage(TaskStage.SEND, send)],
            )

        first = registry.start_or_join(
            OperationKey("a1", "m1", kind=OperationKind.UPLOAD), build
        )
        second = registry.start_or_join(
            OperationKey("a1", "m2", kind=OperationKind.UPLOAD), build
        )
        await first
        await second

        assert sent == ["m1", "m2"]


class TestStageExecution:
    """Tests for stage ordering, skipping and error wrapping."""

    @pytest.mark.asyncio
    async def test_stages_run_in_order_and_skip(
        self, registry: OperationRegistry
    ) -> None:
        order: list[str] = []

        def recorder(name: str):
            async def run(context: StageContext) -> None:
                order.append(name)
                if name == "lookup":
                    context.data = b"cached"

            return run

        await registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(
                Stage(TaskStage.STORE_LOOKUP, recorder("lookup")),
                Stage(
                    TaskStage.DOWNLOAD,
                    recorder("download"),
                    skip_if=lambda context: context.data is not None,
                ),
                Stage(TaskStage.PERSIST, recorder("persist")),
            ),
        )

        assert order == ["lookup", "persist"]

    @pytest.mark.asyncio
    async def test_foreign_exception_is_wrapped(
        self, registry: OperationRegistry
    ) -> None:
        async def broken(context: StageContext) -> None:
            raise OSError("disk full")

        handle = registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(Stage(TaskStage.PERSIST, broken, StoreError)),
        )

        with pytest.raises(StoreError) as exc_info:
            await handle

        assert exc_info.value.stage is TaskStage.PERSIST
        assert exc_info.value.attachment_id == "a1"
        assert isinstance(exc_info.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_optional_stage_failure_is_ignored(
        self, registry: OperationRegistry
    ) -> None:
        ran: list[str] = []

        async def broken(context: StageContext) -> None:
            raise MediaInfoError("unreadable")

        async def persist(context: StageContext) -> None:
            ran.append("persist")

        outcome = await registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(
                Stage(TaskStage.MEDIA_INFO, broken, MediaInfoError, required=False),
                Stage(TaskStage.PERSIST, persist),
            ),
        )

        assert outcome.ok
        assert ran == ["persist"]

    @pytest.mark.asyncio
    async def test_failure_stops_later_stages_and_is_recorded(self, hub) -> None:
        failures = FailureLog()
        registry = OperationRegistry(hub, failures=failures)
        ran: list[str] = []

        async def broken(context: StageContext) -> None:
            raise AttachmentError("nope")

        async def persist(context: StageContext) -> None:
            ran.append("persist")

        handle = registry.start_or_join(
            OperationKey("a1", "m1", "d1"),
            lambda: plan_of(
                Stage(TaskStage.DOWNLOAD, broken),
                Stage(TaskStage.PERSIST, persist),
            ),
        )
        with pytest.raises(AttachmentError):
            await handle

        assert ran == []
        record = failures.get("a1")
        assert record is not None
        assert record.message_ids == {"m1"}
        assert record.dialog_ids == {"d1"}

    @pytest.mark.asyncio
    async def test_new_task_after_failure_starts_in_error(self, hub) -> None:
        observer = RecordingObserver()
        hub.add_observer(observer)
        registry = OperationRegistry(hub)

        async def broken(context: StageContext) -> None:
            raise AttachmentError("nope")

        with pytest.raises(AttachmentError):
            await registry.start_or_join(
                OperationKey("a1", "m1"),
                lambda: plan_of(Stage(TaskStage.DOWNLOAD, broken)),
            )
        await registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(Stage(TaskStage.DOWNLOAD, noop)),
        )

        assert observer.states_for("m1") == [
            AttachmentState.DOWNLOADING,
            AttachmentState.ERROR,
            AttachmentState.DOWNLOADING,
            AttachmentState.LOADED,
        ]
        assert "a1" not in registry.failures


    @pytest.mark.asyncio
    async def test_progress_events_carry_the_stage(self, hub) -> None:
        observer = RecordingObserver()
        hub.add_observer(observer)
        registry = OperationRegistry(hub)

        async def transfer(context: StageContext) -> None:
            context.report_progress(0.5)

        await registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(
                Stage(TaskStage.DOWNLOAD, transfer), Stage(TaskStage.UPLOAD, transfer)
            ),
        )

        # The second report is not above 0.5, so only the download's is delivered
        assert observer.progress == [("m1", "a1", 0.5, TaskStage.DOWNLOAD)]


class TestCancellation:
    """Tests for cancellation and draining."""

    @pytest.mark.asyncio
    async def test_cancel_reaches_waiting_task(
        self, registry: OperationRegistry
    ) -> None:
        ran: list[str] = []

        async def wait(context: StageContext) -> None:
            await asyncio.sleep(10)

        async def upload(context: StageContext) -> None:
            ran.append("upload")

        running = registry.start_or_join(
            OperationKey("a1", "m1", "d1"),
            lambda: plan_of(Stage(TaskStage.DOWNLOAD, wait)),
        )
        waiting = registry.start_or_join(
            OperationKey("a1", "m2", "d1", OperationKind.UPLOAD),
            lambda: plan_of(Stage(TaskStage.UPLOAD, upload)),
        )

        runners = registry.cancel_all_for_dialog("d1")
        await registry.drain(runners)

        assert len(runners) == 2
        assert ran == []
        assert len(registry) == 0
        for handle in (running, waiting):
            with pytest.raises(OperationCancelledError):
                await handle

    @pytest.mark.asyncio
    async def test_cancel_is_global_and_settles_once(
        self, registry: OperationRegistry
    ) -> None:
        entered = asyncio.Event()
        completions: list[str] = []

        async def wait(context: StageContext) -> None:
            entered.set()
            await asyncio.sleep(10)

        def build() -> OperationPlan:
            return plan_of(Stage(TaskStage.DOWNLOAD, wait))

        first = registry.start_or_join(
            OperationKey("a1", "m1"), build, on_complete=lambda o: completions.append("m1")
        )
        second = registry.start_or_join(
            OperationKey("a1", "m2"), build, on_complete=lambda o: completions.append("m2")
        )
        await entered.wait()

        runner = registry.cancel("a1")
        assert runner is not None
        assert registry.cancel("a1") is None
        await registry.drain()

        assert runner.cancelled()
        assert completions == ["m1", "m2"]
        for handle in (first, second):
            with pytest.raises(OperationCancelledError):
                await handle

    @pytest.mark.asyncio
    async def test_swallowed_cancellation_runs_no_further_stages(
        self, registry: OperationRegistry
    ) -> None:
        entered = asyncio.Event()
        ran: list[str] = []

        async def stubborn(context: StageContext) -> None:
            entered.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                ran.append("swallowed")

        async def persist(context: StageContext) -> None:
            ran.append("persist")

        handle = registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(
                Stage(TaskStage.DOWNLOAD, stubborn),
                Stage(TaskStage.PERSIST, persist),
            ),
        )
        await entered.wait()
        handle.cancel()
        await registry.drain()

        assert ran == ["swallowed"]
        outcome = handle.outcome()
        assert outcome is not None
        assert outcome.cancelled

    @pytest.mark.asyncio
    async def test_cancel_by_dialog(self, registry: OperationRegistry) -> None:
        async def wait(context: StageContext) -> None:
            await asyncio.sleep(10)

        in_dialog = registry.start_or_join(
            OperationKey("a1", "m1", "d1"),
            lambda: plan_of(Stage(TaskStage.DOWNLOAD, wait)),
        )
        elsewhere = registry.start_or_join(
            OperationKey("a2", "m2", "d2"),
            lambda: plan_of(Stage(TaskStage.DOWNLOAD, wait), attachment_id="a2"),
        )

        runners = registry.cancel_all_for_dialog("d1")
        await registry.drain(runners)

        assert in_dialog.done()
        assert not elsewhere.done()
        assert "a2" in registry

        registry.cancel_all()
        await registry.drain()
        assert elsewhere.done()

    @pytest.mark.asyncio
    async def test_cancelled_task_reports_no_progress(
        self, registry: OperationRegistry
    ) -> None:
        entered = asyncio.Event()
        received: list[float] = []
        contexts: list[StageContext] = []

        async def wait(context: StageContext) -> None:
            contexts.append(context)
            entered.set()
            await asyncio.sleep(10)

        handle = registry.start_or_join(
            OperationKey("a1", "m1"),
            lambda: plan_of(Stage(TaskStage.DOWNLOAD, wait)),
            on_progress=received.append,
        )
        await entered.wait()
        contexts[0].report_progress(0.4)
        handle.cancel()
        contexts[0].report_progress(0.8)
        await registry.drain()

        assert received == [0.4]

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_break_other_waiters(
        self, registry: OperationRegistry
    ) -> None:
        def explode(outcome) -> None:
            raise RuntimeError("callback bug")

        completions: list[str] = []

        def build() -> OperationPlan:
            return plan_of(Stage(TaskStage.DOWNLOAD, noop))

        first = registry.start_or_join(OperationKey("a1", "m1"), build, on_complete=explode)
        second = registry.start_or_join(
            OperationKey("a1", "m1"), build, on_complete=lambda o: completions.append("ok")
        )

        assert (await first).ok
        assert (await second).ok
        assert completions == ["ok"]
