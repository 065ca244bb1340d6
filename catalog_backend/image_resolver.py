"""image_resolver.py: pick one displayable image URL per catalog record.

Candidate sources are tried strictly in priority order; the first usable one
wins:

1. **Direct image URL**: the spreadsheet's ``Image link`` column. Trusted
   without a network check.
2. **Marketplace metadata**: only for market-addressable records whose
   contract is not exempt. The token metadata's image URL is trusted once
   returned.
3. **IPFS**: the ``IPFS Image`` reference with ``ipfs://`` and trailing
   slashes stripped, checked against each configured gateway (own timeout
   each). Fixed order by default, or a shuffled permutation per pass.
4. **External link**: used directly only when it points at a raster image.
   A link to a marketplace asset page triggers a metadata lookup for the
   contract/token it names instead of fetching the page.
5. **Placeholder**: fixed "no image" URL.

A source that errors or answers with a non-success status is logged and
skipped; no source is retried within one pass.

Render failures reported by the display layer are handled by ``ImageSlot``,
an explicit per-record state machine with a hard retry ceiling.
"""

import logging
import random
import re
import threading
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

import requests
from pydantic import BaseModel

from .marketplace import MarketplaceClient, MarketplaceError
from .records import CatalogRecord

logger = logging.getLogger(__name__)

LOADING_PLACEHOLDER = "https://via.placeholder.com/300x300?text=Loading"
NO_IMAGE_PLACEHOLDER = "https://via.placeholder.com/300x300?text=No+Image"
UNAVAILABLE_PLACEHOLDER = "https://via.placeholder.com/300x300?text=Image+Not+Available"

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif")
DEFAULT_MAX_RETRIES = 3

RE_MARKET_PAGE = re.compile(r"opensea\.io/assets/(?:[a-z-]+/)?(0x[0-9a-fA-F]{40})/(\d+)", re.I)


# ---------- MODELS ----------
class Attempt(BaseModel):
    source: str
    url: Optional[str] = None
    outcome: str  # "ok" | "failed" | "skipped" | "excluded"
    note: Optional[str] = None


class ImageResolution(BaseModel):
    url: str
    source: str  # "direct" | "marketplace" | "ipfs" | "external" | "placeholder"
    attempts: List[Attempt] = []


# ---------- HELPERS ----------
def normalize_ipfs_ref(ref: Optional[str]) -> Optional[str]:
    """Reduce an IPFS reference to its content path (``<cid>[/path]``)."""
    if not ref:
        return None
    value = ref.strip()
    if value.lower().startswith(("http://", "https://")):
        idx = value.find("/ipfs/")
        if idx < 0:
            return None
        value = value[idx + len("/ipfs/"):]
    if value.lower().startswith("ipfs://"):
        value = value[len("ipfs://"):]
    if value.lower().startswith("ipfs/"):
        value = value[len("ipfs/"):]
    value = value.rstrip("/")
    return value or None


def is_image_link(url: Optional[str]) -> bool:
    if not url:
        return False
    return urlparse(url.strip()).path.lower().endswith(IMAGE_EXTENSIONS)


def parse_market_page(url: Optional[str]) -> Optional[Tuple[str, str]]:
    """Contract address and token id of a marketplace asset page link."""
    if not url:
        return None
    m = RE_MARKET_PAGE.search(url)
    return (m.group(1), m.group(2)) if m else None


# ---------- RESOLVER ----------
class ImageResolver:
    def __init__(
        self,
        gateways: Iterable[str],
        marketplace: Optional[MarketplaceClient] = None,
        gateway_timeout: float = 5.0,
        randomize_gateways: bool = False,
        exempt_contracts: Iterable[str] = (),
        session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
    ):
        self.gateways = [g if g.endswith("/") else f"{g}/" for g in gateways]
        self.marketplace = marketplace
        self.gateway_timeout = gateway_timeout
        self.randomize_gateways = randomize_gateways
        self.exempt_contracts = {c.lower() for c in exempt_contracts}
        self.session = session or requests.Session()
        self.rng = rng or random.Random()

    def gateway_order(self) -> List[str]:
        if self.randomize_gateways:
            return self.rng.sample(self.gateways, len(self.gateways))
        return list(self.gateways)

    def gateway_url(self, content_path: str, gateway: Optional[str] = None) -> str:
        return f"{gateway or self.gateways[0]}{content_path}"

    def is_reachable(self, url: str) -> bool:
        """HEAD ``url`` with the gateway timeout; True on a success status."""
        try:
            r = self.session.head(url, timeout=self.gateway_timeout, allow_redirects=True)
        except requests.RequestException as exc:
            logger.warning("Image check failed for %s: %s", url, exc)
            return False
        if r.status_code >= 400:
            logger.warning("Image check for %s returned %s", url, r.status_code)
            return False
        return True

    def _displayable(self, url: str) -> str:
        # metadata images are frequently ipfs:// URIs
        if url.lower().startswith("ipfs://") and self.gateways:
            return self.gateway_url(normalize_ipfs_ref(url) or "")
        return url

    def _market_image(self, contract: str, token: str, attempts: List[Attempt],
                      tried: Set[Tuple[str, str]], exclude: Set[str]) -> Optional[str]:
        key = (contract.lower(), token)
        if key in tried:
            return None
        tried.add(key)
        if contract.lower() in self.exempt_contracts:
            attempts.append(Attempt(source="marketplace", outcome="skipped", note="exempt contract"))
            return None
        if self.marketplace is None:
            attempts.append(Attempt(source="marketplace", outcome="skipped", note="no marketplace client"))
            return None
        try:
            url = self.marketplace.fetch_image_url(contract, token)
        except MarketplaceError as exc:
            logger.warning("Marketplace image lookup failed for %s/%s: %s", contract, token, exc)
            attempts.append(Attempt(source="marketplace", outcome="failed", note=str(exc)[:200]))
            return None
        if not url:
            attempts.append(Attempt(source="marketplace", outcome="failed", note="no image in metadata"))
            return None
        url = self._displayable(url)
        if url in exclude:
            attempts.append(Attempt(source="marketplace", url=url, outcome="excluded"))
            return None
        attempts.append(Attempt(source="marketplace", url=url, outcome="ok"))
        return url

    def resolve(self, record: CatalogRecord, exclude: Iterable[str] = ()) -> ImageResolution:
        """Run one resolution pass for ``record``.

        Args:
            record: The catalog record to find an image for.
            exclude: URLs already known to fail rendering for this record;
                they are treated as unusable.

        Returns:
            An ImageResolution naming the chosen URL, its source and the
            attempts made along the way.
        """
        excluded = set(exclude)
        attempts: List[Attempt] = []
        tried_market: Set[Tuple[str, str]] = set()

        # 1) Direct link
        if record.direct_image_url:
            url = record.direct_image_url
            if url in excluded:
                attempts.append(Attempt(source="direct", url=url, outcome="excluded"))
            else:
                attempts.append(Attempt(source="direct", url=url, outcome="ok"))
                return ImageResolution(url=url, source="direct", attempts=attempts)

        # 2) Marketplace metadata
        if record.is_market_addressable:
            url = self._market_image(record.contract_address, record.token_id, attempts, tried_market, excluded)
            if url:
                return ImageResolution(url=url, source="marketplace", attempts=attempts)

        # 3) IPFS gateways
        content_path = normalize_ipfs_ref(record.ipfs_image_ref)
        if content_path:
            for gateway in self.gateway_order():
                url = self.gateway_url(content_path, gateway)
                if url in excluded:
                    attempts.append(Attempt(source="ipfs", url=url, outcome="excluded"))
                    continue
                if self.is_reachable(url):
                    attempts.append(Attempt(source="ipfs", url=url, outcome="ok"))
                    return ImageResolution(url=url, source="ipfs", attempts=attempts)
                attempts.append(Attempt(source="ipfs", url=url, outcome="failed"))

        # 4) External link
        link = record.external_link
        if link:
            page = parse_market_page(link)
            if page:
                url = self._market_image(page[0], page[1], attempts, tried_market, excluded)
                if url:
                    return ImageResolution(url=url, source="marketplace", attempts=attempts)
            elif is_image_link(link):
                if link in excluded:
                    attempts.append(Attempt(source="external", url=link, outcome="excluded"))
                else:
                    attempts.append(Attempt(source="external", url=link, outcome="ok"))
                    return ImageResolution(url=link, source="external", attempts=attempts)

        # 5) Placeholder
        return ImageResolution(url=NO_IMAGE_PLACEHOLDER, source="placeholder", attempts=attempts)


# ---------- PER-RECORD STATE ----------
class SlotState(str, Enum):
    LOADING = "loading"
    RESOLVED = "resolved"
    RETRYING = "retrying"
    UNAVAILABLE = "unavailable"


class ImageSlot:
    """Image state for one visible record.

    Transitions: LOADING -> RESOLVED on the first pass; RESOLVED -> RETRYING
    -> RESOLVED on a render failure below the ceiling; any -> UNAVAILABLE once
    ``max_retries`` render failures have been reported. UNAVAILABLE is
    terminal and makes no further network requests.
    """

    def __init__(self, record: CatalogRecord, resolver: ImageResolver, max_retries: int = DEFAULT_MAX_RETRIES):
        self.record = record
        self.resolver = resolver
        self.max_retries = max_retries
        self.state = SlotState.LOADING
        self.current_url = LOADING_PLACEHOLDER
        self.attempt_count = 0
        self.failed_urls: Set[str] = set()
        self.last_resolution: Optional[ImageResolution] = None
        # one resolution pass in flight per record
        self._lock = threading.Lock()

    def _run_pass(self) -> str:
        resolution = self.resolver.resolve(self.record, exclude=self.failed_urls)
        self.last_resolution = resolution
        self.current_url = resolution.url
        self.state = SlotState.RESOLVED
        return self.current_url

    def resolve(self) -> str:
        with self._lock:
            if self.state in (SlotState.LOADING, SlotState.RETRYING):
                return self._run_pass()
            return self.current_url

    def render_failed(self, url: Optional[str] = None) -> str:
        """Record that the display layer could not load ``url``.

        Reports for a URL other than the current one are stale and ignored.
        """
        with self._lock:
            if self.state == SlotState.UNAVAILABLE:
                return self.current_url
            if url is not None and url != self.current_url:
                return self.current_url
            self.attempt_count += 1
            self.failed_urls.add(self.current_url)
            if self.attempt_count >= self.max_retries:
                logger.info("Giving up on image for record %d after %d failures",
                            self.record.record_id, self.attempt_count)
                self.state = SlotState.UNAVAILABLE
                self.current_url = UNAVAILABLE_PLACEHOLDER
                return self.current_url
            self.state = SlotState.RETRYING
            return self._run_pass()

    def fall_back(self) -> str:
        """Settle on the "no image" placeholder after a pass raised."""
        with self._lock:
            if self.state != SlotState.UNAVAILABLE:
                self.last_resolution = ImageResolution(url=NO_IMAGE_PLACEHOLDER, source="placeholder")
                self.current_url = NO_IMAGE_PLACEHOLDER
                self.state = SlotState.RESOLVED
            return self.current_url

    def snapshot(self) -> dict:
        return {
            "record_id": self.record.record_id,
            "state": self.state.value,
            "url": self.current_url,
            "attempt_count": self.attempt_count,
            "source": self.last_resolution.source if self.last_resolution else None,
        }
