"""
Transaction matching engine with tolerance rules and fuzzy descriptions.

Pairs statement lines (external) with ledger entries (internal) in tiers:
1. Exact amount and same day
2. Amount within tolerance and date within tolerance
3. Amount within tolerance and similar description (date outside tolerance)

Candidates are then resolved greedily into a one-to-one assignment, highest
confidence first. The engine is pure: it reads in-memory collections and
never commits anything.
"""
import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import List, Dict, Optional, Iterable, Set

from rapidfuzz import fuzz
import jellyfish

from .config import MatchingRules
from .logging_config import get_logger
from .models import (
    EntityKind, ExternalTransaction, InternalTransaction, MatchCandidate, MatchReason,
)

logger = get_logger("matching")

# Tier bands
EXACT_BASE = 0.95
TOLERANCE_BASE = 0.80
SIMILARITY_BASE = 0.65

# Lookup band used by unmatched_hint (mirrors the unmatched transactions view)
HINT_AMOUNT_BAND = Decimal("10")
HINT_DAY_WINDOW = 3


@dataclass
class MatchPlan:
    """Resolved output of one matching pass, not yet committed."""
    auto_apply: List[MatchCandidate] = field(default_factory=list)
    review: List[MatchCandidate] = field(default_factory=list)
    unmatched_external_ids: List[str] = field(default_factory=list)
    candidates_considered: int = 0


class MatchingEngine:
    """
    Matching engine for statement reconciliation.

    Usage:
        engine = MatchingEngine(rules)
        plan = engine.match(external_transactions, ledger_candidates)
    """

    def __init__(self, rules: Optional[MatchingRules] = None):
        self.rules = (rules or MatchingRules()).validate()
        self._text_cache: Dict[str, str] = {}

    def match(
        self,
        external_transactions: List[ExternalTransaction],
        internal_transactions: List[InternalTransaction],
        excluded_internal_ids: Iterable[str] = (),
        excluded_external_ids: Iterable[str] = ()
    ) -> MatchPlan:
        """Score, resolve and split candidates by the auto-approve threshold."""
        candidates = self.generate_candidates(
            external_transactions,
            internal_transactions,
            excluded_internal_ids=excluded_internal_ids,
            excluded_external_ids=excluded_external_ids,
        )
        assigned = self.resolve(candidates)

        plan = MatchPlan(candidates_considered=len(candidates))
        for candidate in assigned:
            if candidate.confidence >= self.rules.auto_approve_threshold:
                plan.auto_apply.append(candidate)
            else:
                plan.review.append(candidate)

        assigned_ids = {c.external.id for c in assigned}
        plan.unmatched_external_ids = [
            tx.id for tx in external_transactions if tx.id not in assigned_ids
        ]

        logger.debug(
            f"Resolved {len(assigned)} of {len(candidates)} candidates | "
            f"auto={len(plan.auto_apply)} | review={len(plan.review)}"
        )
        return plan

    def generate_candidates(
        self,
        external_transactions: List[ExternalTransaction],
        internal_transactions: List[InternalTransaction],
        excluded_internal_ids: Iterable[str] = (),
        excluded_external_ids: Iterable[str] = ()
    ) -> List[MatchCandidate]:
        """Score every (external, internal) pair not already committed."""
        skip_internal: Set[str] = set(excluded_internal_ids)
        skip_external: Set[str] = set(excluded_external_ids)

        internals = [tx for tx in internal_transactions if tx.id not in skip_internal]
        candidates: List[MatchCandidate] = []
        seen_pairs = set()

        for external in external_transactions:
            if external.id in skip_external:
                continue
            for internal in internals:
                pair = (external.id, internal.id)
                if pair in seen_pairs:
                    continue
                seen_pairs.add(pair)

                candidate = self.score_pair(external, internal)
                if candidate is not None:
                    candidates.append(candidate)

        return candidates

    def resolve(self, candidates: List[MatchCandidate]) -> List[MatchCandidate]:
        """
        Greedy one-to-one assignment.

        Highest confidence wins; ties go to the earliest external date, then
        the lowest internal id, then the lowest external id.
        """
        ordered = sorted(
            candidates,
            key=lambda c: (-c.confidence, c.external.transaction_date, c.internal.id, c.external.id)
        )

        claimed_external: Set[str] = set()
        claimed_internal: Set[str] = set()
        assigned: List[MatchCandidate] = []

        for candidate in ordered:
            if candidate.external.id in claimed_external or candidate.internal.id in claimed_internal:
                continue
            assigned.append(candidate)
            claimed_external.add(candidate.external.id)
            claimed_internal.add(candidate.internal.id)

        return assigned

    def score_pair(
        self,
        external: ExternalTransaction,
        internal: InternalTransaction
    ) -> Optional[MatchCandidate]:
        """Score one pair; None when no tier applies or confidence is below the minimum."""
        rules = self.rules

        amount_diff = abs(external.absolute_amount - internal.absolute_amount)
        amount_tolerance = rules.effective_amount_tolerance(external.amount)
        if amount_diff > amount_tolerance:
            return None

        days_apart = abs((external.transaction_date - internal.transaction_date).days)
        similarity = self._best_similarity(external, internal)

        if amount_tolerance > 0:
            amount_closeness = 1.0 - float(amount_diff / amount_tolerance)
        else:
            amount_closeness = 1.0

        if amount_diff == 0 and days_apart == 0:
            confidence = EXACT_BASE + 0.05 * similarity
            reason = MatchReason.EXACT_AMOUNT_AND_DATE
        elif days_apart <= rules.date_tolerance_days:
            if rules.date_tolerance_days > 0:
                date_closeness = 1.0 - days_apart / rules.date_tolerance_days
            else:
                date_closeness = 1.0
            confidence = TOLERANCE_BASE + 0.12 * amount_closeness * date_closeness + 0.02 * similarity
            reason = MatchReason.AMOUNT_MATCH_WITH_DATE_TOLERANCE
        elif similarity >= rules.description_similarity_threshold:
            threshold = rules.description_similarity_threshold
            margin = (similarity - threshold) / (1.0 - threshold) if threshold < 1.0 else 1.0
            recency = 1.0 / (1.0 + (days_apart - rules.date_tolerance_days) / 30.0)
            confidence = SIMILARITY_BASE + 0.14 * amount_closeness * margin * recency
            reason = MatchReason.AMOUNT_AND_DESCRIPTION_SIMILARITY
        else:
            return None

        confidence = round(min(1.0, max(0.0, confidence)), 4)
        if confidence < rules.minimum_confidence:
            return None

        return MatchCandidate(
            external=external,
            internal=internal,
            confidence=confidence,
            reason=reason,
            amount_difference=amount_diff,
            days_apart=days_apart,
            description_similarity=round(similarity, 4),
            rule_parameters=rules.as_dict(),
        )

    def unmatched_hint(
        self,
        external: ExternalTransaction,
        internal_transactions: List[InternalTransaction]
    ) -> str:
        """Coarse label of what kind of ledger entry could explain an unmatched line."""
        window = timedelta(days=HINT_DAY_WINDOW)
        kinds_nearby = {
            tx.kind for tx in internal_transactions
            if abs(tx.absolute_amount - external.absolute_amount) <= HINT_AMOUNT_BAND
            and abs(tx.transaction_date - external.transaction_date) <= window
        }

        for kind in (EntityKind.PAYMENT, EntityKind.INCOME, EntityKind.EXPENSE):
            if kind in kinds_nearby:
                return f"{kind.value}_MATCH_POSSIBLE"
        return MatchReason.NO_OBVIOUS_MATCH.value

    def description_similarity(self, text1: str, text2: str) -> float:
        """Similarity in [0, 1] of two free-text descriptions."""
        n1 = self._normalize_text(text1)
        n2 = self._normalize_text(text2)

        if not n1 or not n2:
            return 0.0

        if n1 == n2:
            return 1.0

        # Token set ratio handles word order, partial ratio handles
        # substrings, Jaro-Winkler handles typos
        token_set = fuzz.token_set_ratio(n1, n2) / 100
        partial = fuzz.partial_ratio(n1, n2) / 100
        jaro = jellyfish.jaro_winkler_similarity(n1, n2)

        return min(1.0, token_set * 0.5 + partial * 0.3 + jaro * 0.2)

    def _best_similarity(self, external: ExternalTransaction, internal: InternalTransaction) -> float:
        scores = [
            self.description_similarity(external.description, internal.description),
            self.description_similarity(external.description, internal.reference),
        ]
        if external.reference and internal.reference:
            scores.append(self.description_similarity(external.reference, internal.reference))
        return max(scores)

    def _normalize_text(self, text: str) -> str:
        """Lower-case, strip punctuation and collapse whitespace."""
        if not text:
            return ""

        if text in self._text_cache:
            return self._text_cache[text]

        normalized = re.sub(r"[^\w\s]", " ", text.lower())
        normalized = " ".join(normalized.split())

        self._text_cache[text] = normalized
        return normalized
