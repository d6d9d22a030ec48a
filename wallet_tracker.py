"""Fetches account positions, trades and profile data from Polymarket."""
import logging
import re
from typing import Optional, List, Dict, Any
from dataclasses import dataclass
from datetime import datetime

from utils import parse_timestamp, validate_wallet_address
from api_client import DataAPIClient, APIError

logger = logging.getLogger("polymarket_pnl_tracker")

# The profile page embeds React Query state; lifetime figures sit in it as JSON
AMOUNT_PNL_PATTERN = re.compile(r'"amount":([\d.-]+),"pnl":([\d.-]+)')
POSITIONS_VALUE_PATTERN = r'\["positions","value","{address}"\][^{{]*\{{[^}}]*"pnl":([\d.-]+)'


class UpstreamFetchError(RuntimeError):
    """Raised when upstream data cannot be fetched or parsed."""
    pass


@dataclass
class MarketPosition:
    address: str
    condition_id: str
    asset: str
    outcome: str
    market_title: str
    market_slug: str
    size: Optional[float]
    avg_price: Optional[float]
    current_price: Optional[float]
    initial_value: Optional[float]
    current_value: Optional[float]
    unrealized_pnl: Optional[float]
    unrealized_pnl_percent: Optional[float]
    realized_pnl: Optional[float]
    end_date: Optional[str] = None


@dataclass
class MarketTrade:
    address: str
    trade_id: str
    condition_id: str
    outcome: str
    side: str  # BUY or SELL
    price: Optional[float]
    size: Optional[float]
    timestamp: Optional[datetime]
    market_title: str = ""
    market_slug: str = ""
    event_slug: str = ""


@dataclass
class Profile:
    name: str
    pseudonym: str = ""
    bio: str = ""
    profile_image: str = ""
    profile_image_optimized: str = ""

    @property
    def image(self) -> str:
        return self.profile_image or self.profile_image_optimized


@dataclass
class LifetimeStats:
    total_pnl: float
    total_volume: Optional[float] = None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class WalletTracker:
    """Upstream gateway used by the sync and watch paths.

    Every method raises UpstreamFetchError on transport or parse failure so
    callers can isolate one address or account.
    """

    def __init__(self, api_client: Optional[DataAPIClient] = None):
        self._client = api_client or DataAPIClient()

    def close(self) -> None:
        """Close API client resources."""
        self._client.close()

    def fetch_positions(self, address: str) -> List[MarketPosition]:
        """Fetch current open positions for a wallet."""
        wallet = validate_wallet_address(address)
        try:
            data = self._client.get_positions(wallet)
        except APIError as e:
            raise UpstreamFetchError(f"Failed to fetch positions for {wallet}: {e}")

        positions = []
        for pos in data:
            if not isinstance(pos, dict):
                raise UpstreamFetchError(f"Malformed position entry for {wallet}: {pos!r}")
            positions.append(MarketPosition(
                address=wallet,
                condition_id=pos.get("conditionId") or "",
                asset=pos.get("asset") or "",
                outcome=pos.get("outcome") or "",
                market_title=pos.get("title") or "",
                market_slug=pos.get("slug") or "",
                size=_optional_float(pos.get("size")),
                avg_price=_optional_float(pos.get("avgPrice")),
                current_price=_optional_float(pos.get("curPrice")),
                initial_value=_optional_float(pos.get("initialValue")),
                current_value=_optional_float(pos.get("currentValue")),
                unrealized_pnl=_optional_float(pos.get("cashPnl")),
                unrealized_pnl_percent=_optional_float(pos.get("percentPnl")),
                realized_pnl=_optional_float(pos.get("realizedPnl")),
                end_date=pos.get("endDate") or None,
            ))
        logger.debug("Fetched %d positions for %s", len(positions), wallet)
        return positions

    def fetch_trades(self, address: str, limit: int = 100) -> List[MarketTrade]:
        """Fetch up to ``limit`` of the most recent trades for a wallet."""
        wallet = validate_wallet_address(address)
        try:
            data = self._client.get_trades(wallet, limit=limit)
        except APIError as e:
            raise UpstreamFetchError(f"Failed to fetch trades for {wallet}: {e}")

        trades = []
        for raw in data:
            if not isinstance(raw, dict):
                raise UpstreamFetchError(f"Malformed trade entry for {wallet}: {raw!r}")
            trades.append(MarketTrade(
                address=wallet,
                trade_id=str(raw.get("id") or raw.get("transactionHash") or ""),
                condition_id=raw.get("conditionId") or "",
                outcome=raw.get("outcome") or "",
                side=(raw.get("side") or "").upper(),
                price=_optional_float(raw.get("price")),
                size=_optional_float(raw.get("size")),
                timestamp=parse_timestamp(raw.get("timestamp")),
                market_title=raw.get("title") or "",
                market_slug=raw.get("slug") or "",
                event_slug=raw.get("eventSlug") or "",
            ))
        logger.debug("Fetched %d trades for %s", len(trades), wallet)
        return trades

    def fetch_profile(self, address: str) -> Optional[Profile]:
        """Fetch profile data, which the activity feed embeds in each entry.

        Returns:
            The profile, or None when the address has no activity yet
        """
        wallet = validate_wallet_address(address)
        try:
            data = self._client.get_activity(wallet, limit=1)
        except APIError as e:
            raise UpstreamFetchError(f"Failed to fetch profile for {wallet}: {e}")

        if not data:
            return None
        entry = data[0]
        if not isinstance(entry, dict):
            raise UpstreamFetchError(f"Malformed activity entry for {wallet}: {entry!r}")
        return Profile(
            name=entry.get("name") or "",
            pseudonym=entry.get("pseudonym") or "",
            bio=entry.get("bio") or "",
            profile_image=entry.get("profileImage") or "",
            profile_image_optimized=entry.get("profileImageOptimized") or "",
        )

    def fetch_lifetime_stats(self, username: str, address: str) -> Optional[LifetimeStats]:
        """Scrape lifetime P&L and volume from the public profile page.

        Args:
            username: Profile name, as shown in the profile URL
            address: Wallet address, used by the fallback pattern

        Returns:
            LifetimeStats, or None when the page carries no P&L figure
        """
        try:
            html = self._client.get_profile_page(username)
        except APIError as e:
            raise UpstreamFetchError(f"Failed to fetch profile page for {username}: {e}")
        return parse_lifetime_stats(html, address)


def parse_lifetime_stats(html: str, address: str) -> Optional[LifetimeStats]:
    """Extract lifetime stats from profile page HTML."""
    match = AMOUNT_PNL_PATTERN.search(html)
    if match:
        try:
            return LifetimeStats(
                total_pnl=float(match.group(2)),
                total_volume=float(match.group(1)),
            )
        except ValueError as e:
            raise UpstreamFetchError(f"Failed to parse lifetime stats: {e}")

    pattern = POSITIONS_VALUE_PATTERN.format(address=re.escape(address.lower()))
    match = re.search(pattern, html)
    if not match:
        logger.warning("Could not find P&L data in profile page for %s", address)
        return None
    try:
        return LifetimeStats(total_pnl=float(match.group(1)))
    except ValueError as e:
        raise UpstreamFetchError(f"Failed to parse lifetime P&L: {e}")
