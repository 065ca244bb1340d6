"""Catalog records parsed from the artwork spreadsheet export.

The CSV has one unnamed leading column holding the artwork title followed
by named columns. Each row becomes an immutable ``CatalogRecord``; blank
cells become ``None`` rather than empty strings so that downstream code can
tell "absent" from "present".
"""

import csv
import io
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

TITLE_HEADER = "Artwork Title"

# CSV header -> CatalogRecord field
COLUMN_MAP: Dict[str, str] = {
    TITLE_HEADER: "title",
    "Type": "type",
    "Edt Size": "edition_size",
    "Mint Date": "mint_date",
    "Platform": "platform",
    "Collection Name": "collection_name",
    "Collaborator/Special Type": "collaborator",
    "Link": "external_link",
    "Contract Hash": "contract_address",
    "Token Type": "token_type",
    "TokenID Start": "token_id",
    "Token ID End": "token_id_end",
    "IPFS Image": "ipfs_image_ref",
    "IPFS Json": "ipfs_json_ref",
    "Pinned?": "pinned",
    "Hosting Type": "hosting_type",
    "Image link": "direct_image_url",
}

DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m",
    "%Y",
)


class ArtworkType(str, Enum):
    UNIQUE = "Unique"
    EDITION = "Edition"
    GENERATIVE = "Generative"
    SERIES = "Series"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ArtworkType":
        key = (value or "").strip().lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        return cls.UNKNOWN


class CatalogRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: int
    title: str = ""
    type: ArtworkType = ArtworkType.UNKNOWN
    platform: str = ""
    collaborator: str = ""
    collection_name: str = ""
    mint_date: str = ""
    edition_size: str = ""
    contract_address: Optional[str] = None
    token_id: Optional[str] = None
    token_id_end: Optional[str] = None
    token_type: Optional[str] = None
    direct_image_url: Optional[str] = None
    ipfs_image_ref: Optional[str] = None
    ipfs_json_ref: Optional[str] = None
    external_link: Optional[str] = None
    pinned: Optional[str] = None
    hosting_type: Optional[str] = None

    @property
    def is_market_addressable(self) -> bool:
        return bool(self.contract_address) and bool(self.token_id)

    @property
    def market_key(self) -> Optional[str]:
        if not self.is_market_addressable:
            return None
        return f"{self.contract_address}-{self.token_id}"

    @property
    def mint_timestamp(self) -> Optional[float]:
        return parse_mint_date(self.mint_date)

    @property
    def edition_count(self) -> int:
        return parse_edition_size(self.edition_size)


def parse_mint_date(value: Optional[str]) -> Optional[float]:
    """Parse a mint date in any of the spreadsheet's formats.

    Returns a UTC timestamp, or None when the value cannot be understood.
    """
    text = (value or "").strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            dt = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return dt.replace(tzinfo=timezone.utc).timestamp()
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def parse_edition_size(value: Optional[str]) -> int:
    # leading integer only: "25", "25 editions", "1/1" -> 25, 25, 1
    m = re.match(r"\s*(\d+)", value or "")
    return int(m.group(1)) if m else 0


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _row_to_record(record_id: int, row: Dict[str, str]) -> Optional[CatalogRecord]:
    fields: Dict[str, Optional[str]] = {}
    for header, name in COLUMN_MAP.items():
        fields[name] = _clean(row.get(header))
    if not any(fields.values()):
        return None

    contract = fields.pop("contract_address")
    token = fields.pop("token_id")
    if bool(contract) != bool(token):
        logger.warning(
            "Row %d (%s) has only one of contract/token; dropping market keys",
            record_id,
            fields.get("title") or "untitled",
        )
        contract = token = None

    return CatalogRecord(
        record_id=record_id,
        title=fields.pop("title") or "",
        type=ArtworkType.parse(fields.pop("type")),
        platform=fields.pop("platform") or "",
        collaborator=fields.pop("collaborator") or "",
        collection_name=fields.pop("collection_name") or "",
        mint_date=fields.pop("mint_date") or "",
        edition_size=fields.pop("edition_size") or "",
        contract_address=contract,
        token_id=token,
        **fields,
    )


def parse_catalog_csv(text: str) -> List[CatalogRecord]:
    """Parse the catalog CSV into records, in file order."""
    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration:
        return []
    # first column has no header; it holds the artwork title
    header = [(h or "").strip() or (TITLE_HEADER if i == 0 else "") for i, h in enumerate(header)]

    records: List[CatalogRecord] = []
    for row in reader:
        data = {name: row[i] for i, name in enumerate(header) if name and i < len(row)}
        record = _row_to_record(len(records), data)
        if record is not None:
            records.append(record)
    logger.info("Parsed %d catalog records", len(records))
    return records


def load_catalog(path: str) -> List[CatalogRecord]:
    with open(path, newline="", encoding="utf-8-sig") as fh:
        return parse_catalog_csv(fh.read())
