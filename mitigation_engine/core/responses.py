"""Response broker for the engine's external-response suspension points.

Approval steps and escalation levels both wait for a human answer. Nothing
blocks while they wait: each open request carries a completion callback and
an expiry ``threading.Timer``. The callback runs exactly once, with the
response, or with ``None`` when the request expires, is cancelled together
with its execution, or the broker is closed.
"""

import threading
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..models.core import (
    ApprovalRequest,
    ApprovalResponse,
    EscalationAcknowledgment,
    EscalationDecision,
    utcnow,
)
from .logging import get_logger

logger = get_logger(__name__)

ResponseCallback = Callable[[Optional[Any]], None]


class _PendingResponse:
    """A single outstanding request and the callback waiting on it."""

    def __init__(self, execution_id: str, on_complete: ResponseCallback):
        self.execution_id = execution_id
        self.on_complete = on_complete
        self.timer: Optional[threading.Timer] = None


class ResponseBroker:
    """Pairs outstanding approval/acknowledgment requests with their responses."""

    def __init__(self):
        self._approvals: Dict[str, _PendingResponse] = {}
        self._approval_requests: Dict[str, ApprovalRequest] = {}
        self._acknowledgments: Dict[Tuple[str, int], _PendingResponse] = {}
        self._lock = threading.RLock()
        self._closed = False

    # Approvals

    def request_approval(self, execution_id: str, step_execution_id: str, approvers: List[str],
                         timeout: timedelta, on_complete: ResponseCallback) -> ApprovalRequest:
        """Open an approval request that ``respond_to_approval`` can answer.

        Args:
            execution_id: Execution owning the request
            step_execution_id: The approval step execution
            approvers: Addresses allowed to answer
            timeout: Time until the request expires
            on_complete: Called once with the ``ApprovalResponse``, or with
                None on expiry or cancellation. On a closed broker it is
                called before this method returns.

        Returns:
            ApprovalRequest: The open request
        """
        now = utcnow()
        request = ApprovalRequest(
            execution_id=execution_id,
            step_execution_id=step_execution_id,
            approvers=approvers,
            requested_at=now,
            expires_at=now + timeout
        )
        pending = _PendingResponse(execution_id, on_complete)
        with self._lock:
            closed = self._closed
            if not closed:
                self._approvals[request.id] = pending
                self._approval_requests[request.id] = request
                pending.timer = self._start_timer(timeout, self._expire_approval, request.id)

        if closed:
            logger.warning(f"Approval request {request.id} opened on a closed broker")
            self._notify(pending, None)
        else:
            logger.debug(f"Opened approval request {request.id} for execution {execution_id}")
        return request

    def respond_to_approval(self, request_id: str, responder: str, approved: bool,
                            notes: Optional[str] = None) -> bool:
        """Answer an open approval request.

        Returns:
            False when the request is unknown, expired or already answered.
        """
        pending = self._settle_approval(request_id)
        if pending is None:
            return False
        logger.info(f"Approval request {request_id} answered by {responder}: approved={approved}")
        self._notify(pending, ApprovalResponse(
            request_id=request_id,
            responder=responder,
            approved=approved,
            notes=notes
        ))
        return True

    def pending_approvals(self, execution_id: Optional[str] = None) -> List[ApprovalRequest]:
        with self._lock:
            return [
                request for request in self._approval_requests.values()
                if execution_id is None or request.execution_id == execution_id
            ]

    def _settle_approval(self, request_id: str) -> Optional[_PendingResponse]:
        with self._lock:
            pending = self._approvals.pop(request_id, None)
            self._approval_requests.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire_approval(self, request_id: str):
        pending = self._settle_approval(request_id)
        if pending is not None:
            logger.info(f"Approval request {request_id} expired")
            self._notify(pending, None)

    # Escalation acknowledgments

    def open_acknowledgment(self, escalation_id: str, level: int, execution_id: str,
                            timeout: timedelta, on_complete: ResponseCallback) -> bool:
        """Start waiting for one escalation level's acknowledgment.

        ``on_complete`` receives the ``EscalationAcknowledgment``, or None when
        the level times out or its execution is cancelled.

        Returns:
            False when the broker is closed; nothing is opened then.
        """
        key = (escalation_id, level)
        pending = _PendingResponse(execution_id, on_complete)
        with self._lock:
            if self._closed:
                return False
            self._acknowledgments[key] = pending
            pending.timer = self._start_timer(timeout, self._expire_acknowledgment, key)
        return True

    def close_acknowledgment(self, escalation_id: str, level: int) -> bool:
        """Withdraw an acknowledgment wait without running its callback."""
        return self._settle_acknowledgment((escalation_id, level)) is not None

    def acknowledge(self, escalation_id: str, level: int, acknowledged_by: str,
                    decision: EscalationDecision = EscalationDecision.ACKNOWLEDGE) -> bool:
        """Acknowledge the currently waiting escalation level.

        Returns:
            False when that level is not waiting for an acknowledgment.
        """
        pending = self._settle_acknowledgment((escalation_id, level))
        if pending is None:
            return False
        logger.info(f"Escalation {escalation_id} level {level} acknowledged by {acknowledged_by} ({decision.value})")
        self._notify(pending, EscalationAcknowledgment(
            escalation_id=escalation_id,
            level=level,
            acknowledged_by=acknowledged_by,
            decision=decision
        ))
        return True

    def _settle_acknowledgment(self, key: Tuple[str, int]) -> Optional[_PendingResponse]:
        with self._lock:
            pending = self._acknowledgments.pop(key, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire_acknowledgment(self, key: Tuple[str, int]):
        pending = self._settle_acknowledgment(key)
        if pending is not None:
            logger.info(f"Escalation {key[0]} level {key[1]} was not acknowledged in time")
            self._notify(pending, None)

    # Cancellation

    def cancel_execution(self, execution_id: str) -> int:
        """Release every request owned by an execution. Returns how many were released."""
        with self._lock:
            released = self._take(lambda pending: pending.execution_id == execution_id)
        self._release(released)
        if released:
            logger.info(f"Released {len(released)} pending response waits for execution {execution_id}")
        return len(released)

    def close(self):
        """Release every request and refuse new ones (used at shutdown)."""
        with self._lock:
            self._closed = True
            released = self._take(lambda pending: True)
        self._release(released)

    def _take(self, predicate: Callable[[_PendingResponse], bool]) -> List[_PendingResponse]:
        """Remove matching requests. Caller holds the broker lock."""
        taken = []
        for request_id, pending in list(self._approvals.items()):
            if predicate(pending):
                taken.append(self._approvals.pop(request_id))
                self._approval_requests.pop(request_id, None)
        for key, pending in list(self._acknowledgments.items()):
            if predicate(pending):
                taken.append(self._acknowledgments.pop(key))
        return taken

    def _release(self, released: Iterable[_PendingResponse]):
        """Run cancelled callbacks on their own thread.

        Cancellation is requested while the caller holds an execution lock,
        and callbacks take execution and escalation locks of their own.
        """
        released = list(released)
        if not released:
            return
        for pending in released:
            if pending.timer is not None:
                pending.timer.cancel()

        def run():
            for pending in released:
                self._notify(pending, None)

        threading.Thread(target=run, name="response-release", daemon=True).start()

    @staticmethod
    def _start_timer(timeout: timedelta, callback: Callable, key: Any) -> threading.Timer:
        timer = threading.Timer(max(0.0, timeout.total_seconds()), callback, args=(key,))
        timer.daemon = True
        timer.start()
        return timer

    @staticmethod
    def _notify(pending: _PendingResponse, response: Optional[Any]):
        try:
            pending.on_complete(response)
        except Exception as e:
            logger.error(
                f"Response callback for execution {pending.execution_id} failed: {str(e)}",
                exc_info=True
            )
