"""Exactly-once deposit detection.

Each feed observation carries an opaque version. The first time a version is
seen it is recorded in the WatermarkStore, whether or not it is relevant, and
only then handed downstream. A version is never acted on twice, even if the
caller fails after classification.

Feed displays may truncate addresses (0xa665d...6a608d5), so relevance falls
back to comparing the first and last six characters when lengths differ.
"""

import re

from carrybot.logging import get_logger
from carrybot.models import DepositClass, DepositEvent
from carrybot.storage.store import WatermarkStore
from carrybot.venues.base import DepositFeed

logger = get_logger(__name__)

_HEX_RE = re.compile(r"^[0-9a-f]{1,64}$")
_MATCH_CHARS = 6


def normalize_address(address: str | None) -> str:
    """Lowercase, trim and 0x-prefix an address. Empty input gives ""."""
    if not address:
        return ""
    address = str(address).strip().lower()
    return address if address.startswith("0x") else f"0x{address}"


def to_long_address(address: str) -> str:
    """Return the 0x + 64 hex form of a full account address.

    Raises:
        ValueError: If address is not 1-64 hex characters.
    """
    normalized = normalize_address(address)
    digits = normalized[2:]
    if not _HEX_RE.match(digits):
        raise ValueError(f"Invalid account address: {address!r}")
    return "0x" + digits.rjust(64, "0")


def same_address(observed: str | None, target: str | None) -> bool:
    """Compare an observed, possibly truncated address against a full target."""
    if not observed or not target:
        return False
    observed = observed.strip().lower()
    target = target.strip().lower()
    if len(observed) == len(target):
        return observed == target
    return observed.startswith(target[:_MATCH_CHARS]) and observed.endswith(
        target[-_MATCH_CHARS:]
    )


class DepositWatermark:
    """Classifies feed observations against the persisted set of seen versions.

    Args:
        store: Persisted seen-version set.
        custodial_address: Wallet deposits must be sent to.
        depositor_address: Expected sender; polling is skipped until set.
    """

    def __init__(
        self,
        store: WatermarkStore,
        custodial_address: str,
        depositor_address: str | None = None,
    ) -> None:
        self._store = store
        self._custodial = normalize_address(custodial_address)
        self._depositor = normalize_address(depositor_address)

    @property
    def depositor_address(self) -> str | None:
        return self._depositor or None

    def set_depositor(self, address: str | None) -> None:
        """Register the expected sender of deposits."""
        self._depositor = normalize_address(address)
        logger.info("depositor_registered", depositor=self._depositor or None)

    def is_relevant(self, event: DepositEvent) -> bool:
        """True if event is a positive transfer from the depositor to the custodial wallet."""
        if event.amount <= 0:
            return False
        return same_address(
            normalize_address(event.from_address), self._depositor
        ) and same_address(normalize_address(event.to_address), self._custodial)

    async def classify(self, event: DepositEvent | None) -> DepositClass:
        """Classify one observation, recording its version if it is new.

        Returns NO_NEW for None and for any version already recorded.
        """
        if event is None or not event.version:
            return DepositClass.NO_NEW

        classification = (
            DepositClass.NEW_MATCHING
            if self.is_relevant(event)
            else DepositClass.NEW_IRRELEVANT
        )
        if not await self._store.record(event.version, classification):
            return DepositClass.NO_NEW

        logger.info(
            "deposit_version_recorded",
            version=event.version,
            classification=classification.value,
            from_address=event.from_address,
            amount=str(event.amount),
        )
        return classification

    async def check(
        self, feed: DepositFeed
    ) -> tuple[DepositClass, DepositEvent | None]:
        """Poll feed once and classify the result.

        Feed errors are logged and reported as NO_NEW. Without a registered
        depositor the feed is not polled.
        """
        if not self._depositor:
            return DepositClass.NO_NEW, None

        try:
            event = await feed.poll()
        except Exception as e:
            logger.warning("deposit_feed_unavailable", error=str(e))
            return DepositClass.NO_NEW, None

        classification = await self.classify(event)
        if classification == DepositClass.NO_NEW:
            return classification, None
        return classification, event
