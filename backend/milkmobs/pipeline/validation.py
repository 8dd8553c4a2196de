"""Participation validation.

Fuses hashtag coverage and the backend's boolean signals into a pass/fail
verdict with a reason trail. The backend's own participation score wins when
it is present and non-zero; otherwise the weighted evidence sum stands in for
it on the same [0, 1] scale.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from milkmobs.models.content_item import ContentStatus

from .config import ValidationConfig
from .types import ValidationVerdict

logger = logging.getLogger(__name__)


class ValidationEngine:
    """Decide whether a content item satisfies the campaign's participation rules."""

    def __init__(self, config: Optional[ValidationConfig] = None):
        self.config = config or ValidationConfig()

    def has_campaign_hashtags(self, hashtags) -> bool:
        """Whether any hashtag mentions the campaign vocabulary."""
        text = " ".join(hashtags or []).lower()
        return any(term.lower() in text for term in self.config.campaign_hashtags)

    def evaluate(self, item) -> ValidationVerdict:
        """
        Evaluate an item. Pure: same fields in, same verdict out.

        Args:
            item: Anything with ``hashtags``, ``mentions_subject``,
                ``shows_object``, ``action_aligned``, ``rationale`` and
                ``participation_score`` attributes

        Returns:
            ValidationVerdict with pass flag, composite score and reasons
        """
        cfg = self.config
        reasons = []
        evidence = 0.0

        if self.has_campaign_hashtags(item.hashtags):
            evidence += cfg.weight_hashtags
            tags = ", ".join(f"#{t}" for t in cfg.campaign_hashtags)
            reasons.append(f"Contains campaign hashtags ({tags})")
        else:
            reasons.append("Missing required campaign hashtags")

        if item.mentions_subject:
            evidence += cfg.weight_mentions
            reasons.append("Mentions milk in content")
        if item.shows_object:
            evidence += cfg.weight_object
            reasons.append("Shows milk carton or product")
        if item.action_aligned:
            evidence += cfg.weight_action
            reasons.append("Action aligns with campaign theme")

        if item.rationale:
            reasons.append(f"Analysis: {item.rationale}")

        authoritative = item.participation_score
        score = authoritative if authoritative else evidence
        score = float(min(1.0, max(0.0, score)))

        passed = score >= cfg.threshold
        pct = f"{score * 100:.1f}%"
        threshold_pct = f"{cfg.threshold * 100:.0f}%"
        if passed:
            reasons.append(f"Score {pct} meets threshold ({threshold_pct})")
        else:
            reasons.append(f"Score {pct} below threshold ({threshold_pct})")

        return ValidationVerdict(passed=passed, score=score, reasons=reasons)

    @staticmethod
    def verdict_fields(verdict: ValidationVerdict) -> dict[str, Any]:
        """Field map to persist a verdict onto the content item."""
        fields: dict[str, Any] = {
            "status": ContentStatus.VALIDATED if verdict.passed else ContentStatus.REJECTED,
            "validation_score": verdict.score,
            "validation_reasons": list(verdict.reasons),
        }
        if verdict.passed:
            fields["validated_at"] = datetime.utcnow()
            fields["rejection_reason"] = None
        else:
            fields["rejection_reason"] = verdict.reasons[-1]
            # A rejected item never keeps a community
            fields["community_id"] = None
        return fields
