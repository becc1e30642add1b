"""
Sealbox Escrow Gate

Release conditions and the single chokepoint that turns a satisfied
condition into outer-layer key material.

The escrow authority is an external collaborator consulted synchronously:
- LocalEscrowAuthority evaluates conditions in-process (time locks against a
  clock, payment conditions against explicit external confirmations)
- HttpEscrowAuthority talks to a remote authority over HTTP

Neither adapter retries; transient failures surface as TransientError and
the caller owns the retry policy (see retry.py).
"""

import hashlib
import hmac
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import httpx

from .exceptions import (
    ConditionNotFoundError,
    ConditionNotSatisfied,
    TransientError,
    ValidationError,
)
from .keys import KeyMaterialProvider, SecretKey

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ConditionKind(str, Enum):
    """Kind of release condition."""

    TIME = "time"
    PAYMENT = "payment"


@dataclass(frozen=True)
class EscrowCondition:
    """
    A release condition created at send time.

    Immutable once created; whether it is satisfied is never stored here
    and is recomputed by the authority on every query.
    """

    reference: str
    kind: ConditionKind
    unlock_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    amount: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.reference or not self.reference.strip():
            raise ValidationError("Condition reference is required", field="reference")
        if self.kind == ConditionKind.TIME:
            if self.unlock_at is None:
                raise ValidationError("Time conditions require unlock_at", field="unlock_at")
            if self.unlock_at.tzinfo is None:
                raise ValidationError("unlock_at must be timezone-aware", field="unlock_at")
        elif self.kind == ConditionKind.PAYMENT:
            if not self.payment_reference:
                raise ValidationError(
                    "Payment conditions require payment_reference", field="payment_reference"
                )

    @classmethod
    def time_lock(cls, reference: str, unlock_at: datetime) -> "EscrowCondition":
        return cls(reference=reference, kind=ConditionKind.TIME, unlock_at=unlock_at)

    @classmethod
    def payment(
        cls,
        reference: str,
        payment_reference: str,
        amount: Optional[str] = None,
    ) -> "EscrowCondition":
        return cls(
            reference=reference,
            kind=ConditionKind.PAYMENT,
            payment_reference=payment_reference,
            amount=amount,
        )

    def with_reference(self, reference: str) -> "EscrowCondition":
        """Return a copy bound to a message reference."""
        return EscrowCondition(
            reference=reference,
            kind=self.kind,
            unlock_at=self.unlock_at,
            payment_reference=self.payment_reference,
            amount=self.amount,
            created_at=self.created_at,
        )

    @property
    def params(self) -> Dict[str, Any]:
        if self.kind == ConditionKind.TIME:
            return {"unlockAt": self.unlock_at.isoformat()}
        params: Dict[str, Any] = {"paymentReference": self.payment_reference}
        if self.amount is not None:
            params["amount"] = self.amount
        return params

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "kind": self.kind.value,
            "params": self.params,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowCondition":
        try:
            params = data.get("params", {})
            return cls(
                reference=data["reference"],
                kind=ConditionKind(data["kind"]),
                unlock_at=_parse_time(params.get("unlockAt")),
                payment_reference=params.get("paymentReference"),
                amount=params.get("amount"),
                created_at=_parse_time(data.get("createdAt")) or utc_now(),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid escrow condition: {e}", field="condition")


@dataclass(frozen=True)
class ConditionStatus:
    """Answer of the escrow authority to a condition query."""

    reference: str
    kind: ConditionKind
    satisfied: bool
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def unlock_at(self) -> Optional[datetime]:
        return _parse_time(self.params.get("unlockAt"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "kind": self.kind.value,
            "satisfied": self.satisfied,
            "params": self.params,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConditionStatus":
        try:
            return cls(
                reference=data["reference"],
                kind=ConditionKind(data["kind"]),
                satisfied=bool(data["satisfied"]),
                params=data.get("params") or {},
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid condition status: {e}", field="status")


class EscrowAuthority(ABC):
    """External authority that owns release-condition state."""

    @abstractmethod
    def publish_condition(self, condition: EscrowCondition) -> None:
        """Register a condition created at send time."""
        pass

    @abstractmethod
    def query_condition(self, reference: str) -> ConditionStatus:
        """Return the current status of a condition."""
        pass

    @abstractmethod
    def release_key_share(self, reference: str) -> bytes:
        """Return the release share for a satisfied condition."""
        pass


class LocalEscrowAuthority(EscrowAuthority):
    """
    In-process escrow authority.

    Time conditions are satisfied once the clock reaches unlock_at. Payment
    conditions are satisfied only after confirm_payment() has been called
    for their payment reference by whatever verifies the payment; this
    class does not implement any payment rail.
    """

    def __init__(self, clock: Optional[Clock] = None, secret: Optional[bytes] = None):
        self._clock = clock or utc_now
        self._secret = secret or secrets.token_bytes(32)
        self._conditions: Dict[str, EscrowCondition] = {}
        self._confirmed_payments: Set[str] = set()
        self._lock = threading.RLock()

    def publish_condition(self, condition: EscrowCondition) -> None:
        with self._lock:
            existing = self._conditions.get(condition.reference)
            if existing is not None:
                if existing.to_dict() != condition.to_dict():
                    raise ValidationError(
                        f"Condition {condition.reference} already published with different terms",
                        field="reference",
                    )
                return
            self._conditions[condition.reference] = condition
            logger.info(f"Published {condition.kind.value} condition: {condition.reference}")

    def confirm_payment(self, payment_reference: str) -> None:
        """Record that a payment has been confirmed externally."""
        with self._lock:
            self._confirmed_payments.add(payment_reference)
            logger.info(f"Payment confirmed: {payment_reference}")

    def query_condition(self, reference: str) -> ConditionStatus:
        with self._lock:
            condition = self._conditions.get(reference)
            if condition is None:
                raise ConditionNotFoundError(reference)

            if condition.kind == ConditionKind.TIME:
                satisfied = self._clock() >= condition.unlock_at
            else:
                satisfied = condition.payment_reference in self._confirmed_payments

            return ConditionStatus(
                reference=reference,
                kind=condition.kind,
                satisfied=satisfied,
                params=condition.params,
            )

    def release_key_share(self, reference: str) -> bytes:
        if not self.query_condition(reference).satisfied:
            raise ConditionNotSatisfied(reference)
        return hmac.new(self._secret, reference.encode("utf-8"), hashlib.sha256).digest()


class HttpEscrowAuthority(EscrowAuthority):
    """
    Client for a remote escrow authority.

    Endpoints:
        POST {endpoint}/conditions
        GET  {endpoint}/conditions/{reference}
        POST {endpoint}/conditions/{reference}/release
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Close the client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def publish_condition(self, condition: EscrowCondition) -> None:
        self._request("POST", "/conditions", condition.reference, json=condition.to_dict())

    def query_condition(self, reference: str) -> ConditionStatus:
        data = self._request("GET", f"/conditions/{reference}", reference)
        return ConditionStatus.from_dict(data)

    def release_key_share(self, reference: str) -> bytes:
        data = self._request("POST", f"/conditions/{reference}/release", reference)
        try:
            return bytes.fromhex(data["share"].replace("0x", "", 1))
        except (KeyError, ValueError, AttributeError) as e:
            raise ValidationError(f"Malformed release response: {e}", field="share")

    def _request(self, method: str, path: str, reference: str, **kwargs) -> Dict[str, Any]:
        """Make a single HTTP request and map failures onto the error taxonomy."""
        url = f"{self.endpoint}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise TransientError(f"Escrow authority unreachable: {e}", operation=path, original_error=e)
        except httpx.HTTPError as e:
            raise TransientError(f"Escrow request error: {e}", operation=path, original_error=e)

        status = response.status_code
        if status == 404:
            raise ConditionNotFoundError(reference)
        if status in (409, 423):
            raise ConditionNotSatisfied(reference)
        if status >= 500:
            raise TransientError(f"Escrow authority error: HTTP {status}", operation=path)
        if status >= 400:
            raise ValidationError(f"Escrow authority rejected request: HTTP {status}")

        return response.json() if response.content else {}


class EscrowGate:
    """
    The only path from a release condition to outer-layer key material.

    check_condition() is a pure read against the authority and is safe to
    call concurrently and repeatedly. release_outer_key() re-checks the
    condition on every call and returns nothing unless it is satisfied.
    """

    def __init__(
        self,
        authority: EscrowAuthority,
        key_provider: KeyMaterialProvider,
        clock: Optional[Clock] = None,
    ):
        self._authority = authority
        self._key_provider = key_provider
        self._clock = clock or utc_now

    @property
    def authority(self) -> EscrowAuthority:
        return self._authority

    def status(self, reference: str) -> ConditionStatus:
        """Query the authority for the current condition status."""
        return self._authority.query_condition(reference)

    def check_condition(self, reference: str) -> bool:
        """
        Return whether the release condition is satisfied right now.

        Raises:
            ConditionNotFoundError: Unknown reference
            TransientError: Authority unreachable
        """
        status = self._authority.query_condition(reference)
        if not status.satisfied:
            return False

        # A time lock reported open ahead of our own clock stays closed
        if status.kind == ConditionKind.TIME:
            unlock_at = status.unlock_at
            if unlock_at is not None and self._clock() < unlock_at:
                logger.warning(f"Authority reported {reference} open before unlock time")
                return False
        return True

    def release_outer_key(self, reference: str) -> "ReleasedKey":
        """
        Release the outer key for a message whose condition is satisfied.

        The key is derived for the condition reference itself, so a package
        pointed at some other satisfied condition gets a key that cannot
        open its escrow layer.

        Args:
            reference: Condition reference (the message id it was bound to)

        Returns:
            ReleasedKey (a SecretKey carrying the release receipt digest)

        Raises:
            ConditionNotSatisfied: If the condition is not satisfied now
        """
        if not self.check_condition(reference):
            logger.info(f"Release denied, condition not satisfied: {reference}")
            raise ConditionNotSatisfied(reference)

        receipt = self._authority.release_key_share(reference)
        if not receipt:
            logger.warning(f"Authority returned an empty release share: {reference}")
            raise ConditionNotSatisfied(reference)

        derived = self._key_provider.derive_outer_key(reference)
        try:
            released = ReleasedKey(derived.material, hashlib.sha256(receipt).hexdigest())
        finally:
            derived.wipe()

        logger.info(f"Outer key released for condition {reference}")
        return released


class ReleasedKey(SecretKey):
    """Outer key released by the gate, with the digest of the authority's receipt."""

    __slots__ = ("receipt_digest",)

    def __init__(self, material: bytes, receipt_digest: str):
        super().__init__(material)
        self.receipt_digest = receipt_digest


def wait_for_release(
    gate: EscrowGate,
    reference: str,
    timeout: float = 30.0,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll the gate until the condition is satisfied.

    Transient authority failures count as "not yet" while polling.

    Returns:
        True if satisfied, False if timeout
    """
    start = clock()
    while True:
        try:
            if gate.check_condition(reference):
                return True
        except TransientError as e:
            logger.warning(f"Escrow poll failed for {reference}: {e}")
        if clock() - start + interval > timeout:
            return False
        sleep(interval)
