"""
Multicast notification hub for attachment state and progress changes.

Observers are held weakly: registering an observer never keeps it alive. The
deprecated single ``legacy_observer`` slot feeds through the same broadcast
path as every other observer.
"""

from __future__ import annotations

import logging
import threading
import warnings
import weakref
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chat_attachments.interfaces import AttachmentObserver
    from chat_attachments.lifecycle import TaskStage
    from chat_attachments.models import Attachment, AttachmentState

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Callable[[], None]], Any]

# Slot key reserved for the legacy single observer
_LEGACY_SLOT = "legacy"


class NotificationHub:
    """Fans out attachment notifications to registered observers.

    Registration and removal are thread-safe and may be called from inside a
    notification callback. Each broadcast delivers to a snapshot of the
    observers registered when it started; an observer removed before its turn
    in the snapshot is skipped.
    """

    def __init__(self, dispatcher: Dispatcher | None = None) -> None:
        """
        Initialize the hub.

        Args:
            dispatcher: Optional callable that schedules a zero-argument
                delivery on the context observers expect, for example
                ``loop.call_soon_threadsafe``. Deliveries run inline when None.
        """
        self.dispatcher = dispatcher
        self._lock = threading.RLock()
        self._observers: dict[int, weakref.ref[AttachmentObserver]] = {}
        self._legacy: weakref.ref[AttachmentObserver] | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

    def add_observer(self, observer: AttachmentObserver) -> None:
        key = id(observer)
        with self._lock:
            existing = self._observers.get(key)
            if existing is not None and existing() is observer:
                return
            self._observers[key] = weakref.ref(observer, self._reaper(key))

    def remove_observer(self, observer: AttachmentObserver) -> None:
        key = id(observer)
        with self._lock:
            existing = self._observers.get(key)
            if existing is not None and existing() is observer:
                del self._observers[key]

    def has_observer(self, observer: AttachmentObserver) -> bool:
        with self._lock:
            existing = self._observers.get(id(observer))
            return existing is not None and existing() is observer

    @property
    def legacy_observer(self) -> AttachmentObserver | None:
        with self._lock:
            return self._legacy() if self._legacy is not None else None

    @legacy_observer.setter
    def legacy_observer(self, observer: AttachmentObserver | None) -> None:
        warnings.warn(
            "legacy_observer is deprecated, use add_observer() instead",
            DeprecationWarning,
            stacklevel=2,
        )
        with self._lock:
            self._legacy = weakref.ref(observer) if observer is not None else None

    def _reaper(self, key: int) -> Callable[[weakref.ref[Any]], None]:
        def reap(ref: weakref.ref[Any]) -> None:
            with self._lock:
                if self._observers.get(key) is ref:
                    del self._observers[key]

        return reap

    def _snapshot(self) -> list[tuple[int | str, weakref.ref[AttachmentObserver]]]:
        with self._lock:
            slots: list[tuple[int | str, weakref.ref[AttachmentObserver]]] = list(
                self._observers.items()
            )
            if self._legacy is not None:
                legacy = self._legacy()
                # Skip the legacy slot when the same object is also registered
                if legacy is not None and not any(
                    ref() is legacy for _, ref in slots
                ):
                    slots.append((_LEGACY_SLOT, self._legacy))
            return slots

    def _is_current(
        self, slot: int | str, ref: weakref.ref[AttachmentObserver]
    ) -> bool:
        with self._lock:
            if slot == _LEGACY_SLOT:
                return self._legacy is ref
            return self._observers.get(slot) is ref  # type: ignore[arg-type]

    def _broadcast(self, method: str, *args: Any) -> None:
        for slot, ref in self._snapshot():
            self._deliver(slot, ref, method, args)

    def _deliver(
        self,
        slot: int | str,
        ref: weakref.ref[AttachmentObserver],
        method: str,
        args: tuple[Any, ...],
    ) -> None:
        def deliver() -> None:
            if not self._is_current(slot, ref):
                return
            observer = ref()
            if observer is None:
                return
            callback = getattr(observer, method, None)
            if callback is None:
                return
            try:
                callback(*args)
            except Exception as e:
                logger.error(
                    f"Observer {observer!r} failed handling {method}: {e}",
                    exc_info=True,
                )

        if self.dispatcher is not None:
            self.dispatcher(deliver)
        else:
            deliver()

    def emit_state_changed(
        self, attachment: Attachment, message_id: str, state: AttachmentState
    ) -> None:
        logger.debug(
            f"Attachment {attachment.id} in message {message_id} is now {state.value}"
        )
        self._broadcast("attachment_state_changed", attachment, message_id, state)

    def emit_progress(
        self,
        message_id: str,
        attachment_id: str,
        progress: float,
        stage: TaskStage | None = None,
    ) -> None:
        progress = min(max(progress, 0.0), 1.0)
        self._broadcast(
            "attachment_progress_changed", message_id, attachment_id, progress, stage
        )
