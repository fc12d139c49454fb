"""Deposit feed implementations.

IndexerDepositFeed reads the newest fungible-asset deposit into the custodial
wallet from the Aptos indexer GraphQL API. Requests go through urllib.request
in a worker thread.

PaperDepositFeed is an in-memory queue fed through the control API in paper
mode; pushing a deposit also credits the simulated wallet.
"""

import asyncio
import itertools
import json
import time
import urllib.error
import urllib.request
from collections import deque
from decimal import Decimal, InvalidOperation

from carrybot.exceptions import FeedUnavailableError
from carrybot.logging import get_logger
from carrybot.models import DepositEvent
from carrybot.venues.base import DepositFeed
from carrybot.venues.paper import PaperLedger

logger = get_logger(__name__)

_DEPOSIT_TYPES = ["0x1::fungible_asset::Deposit", "0x1::coin::DepositEvent"]

_LATEST_DEPOSIT_QUERY = """
query LatestDeposit($owner: String!, $asset: String!, $types: [String!]) {
  fungible_asset_activities(
    where: {
      owner_address: {_eq: $owner}
      asset_type: {_eq: $asset}
      type: {_in: $types}
      is_gas_fee: {_eq: false}
      is_transaction_success: {_eq: true}
    }
    order_by: {transaction_version: desc}
    limit: 1
  ) {
    transaction_version
    amount
    owner_address
  }
}
"""

_SENDER_QUERY = """
query TransactionSender($version: bigint!) {
  user_transactions(where: {version: {_eq: $version}}) {
    sender
  }
}
"""


def from_base_units(amount: object, decimals: int) -> Decimal:
    """Convert an integer base-unit amount to a Decimal in whole units."""
    try:
        raw = Decimal(str(amount).lstrip("+"))
    except InvalidOperation as e:
        raise FeedUnavailableError(f"Unparseable amount: {amount!r}") from e
    return raw.scaleb(-decimals)


class IndexerDepositFeed(DepositFeed):
    """Polls the Aptos indexer for the latest deposit to the custodial wallet.

    Args:
        indexer_url: GraphQL endpoint.
        owner_address: Custodial wallet address (long form).
        asset_type: Fungible asset metadata address of the settlement asset.
        decimals: Settlement asset decimals.
        api_key: Optional indexer API key.
        timeout: HTTP timeout in seconds.
    """

    def __init__(
        self,
        indexer_url: str,
        owner_address: str,
        asset_type: str,
        decimals: int = 6,
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = indexer_url
        self._owner = owner_address
        self._asset_type = asset_type
        self._decimals = decimals
        self._api_key = api_key
        self._timeout = timeout

    def _post(self, query: str, variables: dict) -> dict:
        """POST one GraphQL query and return its data object."""
        headers = {"Content-Type": "application/json", "User-Agent": "carrybot/0.1"}
        if self._api_key:
            headers["x-aptos-api-key"] = self._api_key
        body = json.dumps({"query": query, "variables": variables}).encode()
        req = urllib.request.Request(self._url, data=body, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                payload = json.loads(resp.read())
        except urllib.error.HTTPError as e:
            raise FeedUnavailableError(f"indexer http {e.code}: {e.reason}") from e
        except (urllib.error.URLError, TimeoutError, ValueError) as e:
            raise FeedUnavailableError(f"indexer request failed: {e}") from e

        if payload.get("errors"):
            raise FeedUnavailableError(
                f"indexer gql error: {json.dumps(payload['errors'])}"
            )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise FeedUnavailableError("indexer response has no data")
        return data

    def _fetch_latest(self) -> DepositEvent | None:
        data = self._post(
            _LATEST_DEPOSIT_QUERY,
            {"owner": self._owner, "asset": self._asset_type, "types": _DEPOSIT_TYPES},
        )
        rows = data.get("fungible_asset_activities") or []
        if not rows:
            return None

        row = rows[0]
        version = str(row["transaction_version"])
        sender_data = self._post(_SENDER_QUERY, {"version": int(version)})
        senders = sender_data.get("user_transactions") or []
        sender = senders[0]["sender"] if senders else ""

        return DepositEvent(
            version=version,
            from_address=sender,
            to_address=row.get("owner_address") or self._owner,
            amount=from_base_units(row.get("amount", 0), self._decimals),
        )

    async def poll(self) -> DepositEvent | None:
        """Return the newest successful deposit, or None.

        Raises:
            FeedUnavailableError: On network, HTTP or GraphQL errors.
        """
        event = await asyncio.to_thread(self._fetch_latest)
        if event is not None:
            logger.debug(
                "indexer_deposit_polled",
                version=event.version,
                sender=event.from_address,
                amount=str(event.amount),
            )
        return event


class PaperDepositFeed(DepositFeed):
    """Queue of simulated deposits. Each poll returns the next one, if any.

    Args:
        ledger: Simulated ledger credited when a deposit is pushed.
        custodial_address: Recipient recorded on every event.
        asset: Settlement asset credited on the ledger.
    """

    def __init__(
        self, ledger: PaperLedger, custodial_address: str, asset: str
    ) -> None:
        self._ledger = ledger
        self._custodial = custodial_address
        self._asset = asset
        self._pending: deque[DepositEvent] = deque()
        self._counter = itertools.count(1)

    def push(self, from_address: str, amount: Decimal) -> DepositEvent:
        """Simulate an inbound transfer and queue it for the next poll."""
        version = f"{int(time.time() * 1000)}{next(self._counter):04d}"
        event = DepositEvent(
            version=version,
            from_address=from_address,
            to_address=self._custodial,
            amount=amount,
        )
        self._ledger.credit(self._asset, amount)
        self._pending.append(event)
        logger.info(
            "paper_deposit_pushed",
            version=version,
            from_address=from_address,
            amount=str(amount),
        )
        return event

    async def poll(self) -> DepositEvent | None:
        if not self._pending:
            return None
        return self._pending.popleft()
