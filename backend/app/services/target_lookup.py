"""
Resolve report rows to target ids.

Reporting uses its own match-type vocabulary; the target export uses another.
TargetCache prefetches every target for the ad groups in a report so rows are
resolved in memory instead of one query per row.
"""

import logging
import re
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ResolutionError
from app.models import Target
from app.utils import keep_only_ascii

logger = logging.getLogger(__name__)

KEYWORD_MATCH_TYPES = ("EXACT", "PHRASE", "BROAD")

PREDEFINED_MATCH_TYPES = {
    "close-match": "SEARCH_CLOSE_MATCH",
    "loose-match": "SEARCH_LOOSE_MATCH",
    "substitutes": "PRODUCT_SUBSTITUTES",
    "complements": "PRODUCT_COMPLEMENTS",
}

_ASIN_RE = re.compile(r'asin(?:-expanded)?="([^"]+)"')


class ResolvedTarget(NamedTuple):
    entity_id: str
    match_type: str
    target_value: str


def parse_asin(target_value: str) -> Optional[str]:
    """asin="B0123ABC" or asin-expanded="B0123ABC" -> B0123ABC"""
    match = _ASIN_RE.search(target_value or "")
    return match.group(1) if match else None


def convert_match_type(match_type: str, target_value: str) -> str:
    """Map a report match type to the target export's match type."""
    if match_type in KEYWORD_MATCH_TYPES:
        return match_type
    if match_type == "TARGETING_EXPRESSION":
        return "PRODUCT_SIMILAR" if "expanded" in target_value else "PRODUCT_EXACT"
    if match_type == "TARGETING_EXPRESSION_PREDEFINED":
        converted = PREDEFINED_MATCH_TYPES.get(target_value)
        if not converted:
            raise ValueError(
                f"Invalid predefined expression value: {target_value}. "
                f"Expected one of: {', '.join(PREDEFINED_MATCH_TYPES)}"
            )
        return converted
    raise ValueError(f"Unknown match type: {match_type} (target value: {target_value})")


class TargetCache:
    """In-memory index of targets for a set of ad groups."""

    def __init__(self):
        self.manual_keyword: dict[tuple[str, str, str], str] = {}
        self.product: dict[tuple[str, str, str], str] = {}
        self.auto: dict[tuple[str, str], str] = {}

    @classmethod
    async def build(cls, db: AsyncSession, ad_group_ids: set[str]) -> "TargetCache":
        cache = cls()
        if not ad_group_ids:
            return cache
        result = await db.execute(
            select(Target).where(Target.ad_group_id.in_(sorted(ad_group_ids)))
        )
        cache.add_targets(result.scalars().all())
        logger.info(
            f"TargetCache: {len(cache.manual_keyword)} keywords, {len(cache.product)} product targets, "
            f"{len(cache.auto)} auto targets for {len(ad_group_ids)} ad groups"
        )
        return cache

    def add_targets(self, targets) -> None:
        for t in targets:
            if not t.ad_group_id or not t.target_match_type:
                continue
            if t.target_keyword:
                self.manual_keyword[(t.ad_group_id, t.target_keyword, t.target_match_type)] = t.target_id
            if t.target_asin:
                self.product[(t.ad_group_id, t.target_asin, t.target_match_type)] = t.target_id
            if t.target_type == "AUTO":
                self.auto[(t.ad_group_id, t.target_match_type)] = t.target_id

    def resolve(self, row) -> ResolvedTarget:
        """
        Find the target id for a target report row.
        Raises ResolutionError (with the raw row) when nothing matches.
        """
        ad_group_id = row.ad_group_id
        target_value = row.target_value
        match_type = row.target_match_type
        raw = row.model_dump(by_alias=True)

        if not target_value or not match_type:
            # Fallback: the report left target columns empty, use the matched keyword
            matched = keep_only_ascii(getattr(row, "matched_target", None) or row.search_term or "")
            if not matched:
                raise ResolutionError(
                    f"Could not find target for adGroupId: {ad_group_id} "
                    f"(target.value, target.matchType and matched value all empty)",
                    row=raw,
                )
            target_id = self.manual_keyword.get((ad_group_id, matched, "EXACT"))
            if not target_id:
                raise ResolutionError(
                    f"Could not find target for adGroupId: {ad_group_id}, matched value: {matched} (fallback EXACT)",
                    row=raw,
                )
            return ResolvedTarget(target_id, "EXACT", matched)

        try:
            export_match_type = convert_match_type(match_type, target_value)
        except ValueError as e:
            raise ResolutionError(str(e), row=raw) from e

        if match_type in KEYWORD_MATCH_TYPES:
            target_id = self.manual_keyword.get((ad_group_id, target_value, export_match_type))
            detail = f"keyword: {target_value}"
        elif match_type == "TARGETING_EXPRESSION":
            asin = parse_asin(target_value)
            if not asin:
                raise ResolutionError(f"Could not parse ASIN from targetValue: {target_value}", row=raw)
            target_id = self.product.get((ad_group_id, asin, export_match_type))
            detail = f"asin: {asin}"
        else:
            target_id = self.auto.get((ad_group_id, export_match_type))
            detail = "targetType: AUTO"

        if not target_id:
            raise ResolutionError(
                f"Could not find target for adGroupId: {ad_group_id}, {detail}, "
                f"matchType: {match_type} (converted: {export_match_type})",
                row=raw,
            )
        return ResolvedTarget(target_id, export_match_type, target_value)
