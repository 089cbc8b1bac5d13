"""Notifier contract, role directory and circuit-breaker guard."""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from ..models.core import Notification
from .error_recovery import CircuitBreaker
from .logging import get_logger

logger = get_logger(__name__)


class Notifier(ABC):
    """Send-and-forget sink for notifications. Raises on delivery failure."""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver a notification."""


class LoggingNotifier(Notifier):
    """Notifier that records deliveries in the log only."""

    def send(self, notification: Notification) -> None:
        logger.info(
            f"Notification '{notification.subject}' to {len(notification.recipients)} recipients "
            f"via {', '.join(c.value for c in notification.channels)}"
        )


class GuardedNotifier(Notifier):
    """Routes every send through a circuit breaker so a failing transport is not hammered."""

    def __init__(self, notifier: Notifier, breaker: Optional[CircuitBreaker] = None):
        self.notifier = notifier
        self.breaker = breaker or CircuitBreaker(name="notifier")

    def send(self, notification: Notification) -> None:
        self.breaker.call(self.notifier.send, notification)


class RecipientDirectory:
    """Resolves responsible roles to notification addresses."""

    def __init__(self, roles: Optional[Dict[str, List[str]]] = None, default_domain: str = "company.com"):
        self._roles: Dict[str, List[str]] = {role: list(addresses) for role, addresses in (roles or {}).items()}
        self._default_domain = default_domain
        self._lock = threading.RLock()

    def register(self, role: str, addresses: Iterable[str]):
        with self._lock:
            self._roles[role] = list(addresses)

    def resolve_role(self, role: str) -> List[str]:
        """Addresses for a role, falling back to ``role@default_domain``."""
        with self._lock:
            addresses = self._roles.get(role)
        if addresses:
            return list(addresses)
        return [f"{role}@{self._default_domain}"]

    def resolve(self, roles: Iterable[str], individuals: Iterable[str] = ()) -> List[str]:
        """Addresses for several roles plus individuals, de-duplicated in order."""
        recipients: List[str] = []
        for role in roles:
            for address in self.resolve_role(role):
                if address not in recipients:
                    recipients.append(address)
        for individual in individuals:
            if individual not in recipients:
                recipients.append(individual)
        return recipients
