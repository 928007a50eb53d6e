"""A delivered record awaiting an explicit ack or nack."""

from enum import Enum
from typing import Dict, Optional

from aiokafka.structs import ConsumerRecord

from reminder_pipeline.common.exceptions import DeliveryAlreadySettledError

REDELIVERY_HEADER = "x-redelivery-count"
MESSAGE_ID_HEADER = "message-id"


class DeliveryOutcome(Enum):
    """How a delivery was settled."""

    ACK = "ack"
    NACK_REQUEUE = "requeue"
    NACK_DISCARD = "discard"


class Delivery:
    """
    One record handed to a consumer handler.

    The handler must call exactly one of ``ack()`` or ``nack()``. The broker
    client acts on the outcome after the handler returns: an ack or a
    discard lets the offset be committed; a requeue puts the payload back on
    the topic for another attempt.
    """

    def __init__(self, record: ConsumerRecord):
        self.record = record
        self._outcome: Optional[DeliveryOutcome] = None
        self._headers: Dict[str, bytes] = {
            k: v for k, v in (record.headers or ()) if v is not None
        }

    @property
    def body(self) -> bytes:
        return self.record.value or b""

    @property
    def key(self) -> Optional[str]:
        if self.record.key is None:
            return None
        return self.record.key.decode("utf-8", errors="replace")

    @property
    def topic(self) -> str:
        return self.record.topic

    @property
    def partition(self) -> int:
        return self.record.partition

    @property
    def offset(self) -> int:
        return self.record.offset

    @property
    def message_id(self) -> Optional[str]:
        raw = self._headers.get(MESSAGE_ID_HEADER)
        return raw.decode("utf-8", errors="replace") if raw else None

    @property
    def redelivery_count(self) -> int:
        """Number of times this payload was requeued before this delivery."""
        raw = self._headers.get(REDELIVERY_HEADER)
        if not raw:
            return 0
        try:
            return max(int(raw.decode("ascii")), 0)
        except (UnicodeDecodeError, ValueError):
            return 0

    @property
    def headers(self) -> Dict[str, bytes]:
        return dict(self._headers)

    @property
    def outcome(self) -> Optional[DeliveryOutcome]:
        return self._outcome

    @property
    def is_settled(self) -> bool:
        return self._outcome is not None

    def ack(self) -> None:
        """Remove the message from the channel."""
        self._settle(DeliveryOutcome.ACK)

    def nack(self, requeue: bool = True) -> None:
        """Return the message for redelivery, or discard it when requeue is False."""
        self._settle(DeliveryOutcome.NACK_REQUEUE if requeue else DeliveryOutcome.NACK_DISCARD)

    def _settle(self, outcome: DeliveryOutcome) -> None:
        if self._outcome is not None:
            raise DeliveryAlreadySettledError(
                f"Delivery at {self.topic}:{self.partition}:{self.offset} "
                f"already settled as {self._outcome.value}"
            )
        self._outcome = outcome

    def __repr__(self) -> str:
        state = self._outcome.value if self._outcome else "unsettled"
        return f"<Delivery {self.topic}:{self.partition}:{self.offset} {state}>"
