"""Organization-configurable lead scoring.

Each organization owns a set of :class:`ScoringRule` rows.  A rule pairs a
``rule_type`` (which signal to look at) with a ``trigger_condition`` (how
to compare it) and a signed ``score_change``.  Matching rules are summed
and the total is clamped to ``[0, 100]``.

Evaluation is table-driven: one evaluator function per rule type, looked
up in ``_EVALUATORS``.  Unknown rule types or condition types are logged
and treated as "no match"; they never raise.

Organizations start with no rules.  The first time one is scored, the
default rule set is seeded (tolerating a concurrent seeder) and scoring is
retried once.  If rules still cannot be loaded the hard-coded
:func:`fallback_score` heuristic is used, so callers always get a result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from chatdesk.errors import DuplicateKeyError, PersistenceFailure
from chatdesk.models import (
    ConditionType,
    LeadQuality,
    RuleType,
    RuleUpdate,
    ScoreResult,
    ScoringFactors,
    ScoringRule,
    TriggerCondition,
)
from chatdesk.store import Store

logger = logging.getLogger(__name__)

FREE_EMAIL_PROVIDERS = ["gmail.com", "yahoo.com", "hotmail.com", "outlook.com"]
HIGH_INTENT_KEYWORDS = ["pricing", "demo", "trial", "buy", "purchase", "quote", "contract"]
MEDIUM_INTENT_KEYWORDS = ["learn more", "interested", "information", "details"]

MIN_SCORE = 0
MAX_SCORE = 100


def quality_for(score: int) -> LeadQuality:
    """Map a clamped score to its quality tier."""
    if score >= 70:
        return LeadQuality.HOT
    if score >= 40:
        return LeadQuality.WARM
    if score >= 20:
        return LeadQuality.COLD
    return LeadQuality.UNQUALIFIED


def _clamp(score: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, score))


def _signed(n: int) -> str:
    return f"+{n}" if n > 0 else str(n)


# ── Default rule set ─────────────────────────────────────────────────


def default_rules(organization_id: str) -> list[ScoringRule]:
    """The canonical rule set seeded for organizations with no rules."""
    specs = [
        ("Corporate Email Domain", RuleType.EMAIL_DOMAIN,
         {"type": "not_in_list", "values": FREE_EMAIL_PROVIDERS}, 20),
        ("Phone Number Provided", RuleType.PHONE_PROVIDED,
         {"type": "exists", "field": "phone"}, 15),
        ("Detailed Inquiry", RuleType.NOTES_LENGTH,
         {"type": "greater_than", "field": "notes", "value": 100}, 15),
        ("High Intent Keywords - Buy/Purchase", RuleType.KEYWORD_MATCH,
         {"type": "contains_any", "field": "keywords",
          "values": ["pricing", "buy", "purchase", "demo", "quote", "contract"]}, 25),
        ("Medium Intent Keywords", RuleType.KEYWORD_MATCH,
         {"type": "contains_any", "field": "keywords", "values": MEDIUM_INTENT_KEYWORDS}, 15),
        ("Quick Response Time", RuleType.RESPONSE_TIME,
         {"type": "less_than", "field": "response_time_seconds", "value": 30}, 15),
        ("High Engagement - Multiple Questions", RuleType.ENGAGEMENT,
         {"type": "greater_than_or_equal", "field": "num_questions", "value": 3}, 20),
    ]
    return [
        ScoringRule(
            organization_id=organization_id,
            rule_name=name,
            rule_type=rule_type.value,
            trigger_condition=TriggerCondition(**condition),
            score_change=change,
        )
        for name, rule_type, condition, change in specs
    ]


# ── Per-type evaluators ──────────────────────────────────────────────


class _UnsupportedCondition(Exception):
    pass


def _condition_type(condition: TriggerCondition) -> ConditionType:
    try:
        return ConditionType(condition.type)
    except ValueError:
        raise _UnsupportedCondition(condition.type) from None


def _threshold(condition: TriggerCondition) -> float:
    if condition.value is None:
        raise _UnsupportedCondition(f"{condition.type} without a value")
    return condition.value


def _eval_email_domain(condition: TriggerCondition, factors: ScoringFactors) -> bool:
    if not factors.email_domain:
        return False
    domain = factors.email_domain.lower()
    values = {v.lower() for v in condition.values}
    kind = _condition_type(condition)
    if kind is ConditionType.NOT_IN_LIST:
        return domain not in values
    if kind is ConditionType.IN_LIST:
        return domain in values
    raise _UnsupportedCondition(condition.type)


def _eval_phone_provided(condition: TriggerCondition, factors: ScoringFactors) -> bool:
    return factors.phone_provided


def _eval_notes_length(condition: TriggerCondition, factors: ScoringFactors) -> bool:
    if not factors.notes:
        return False
    length = len(factors.notes)
    kind = _condition_type(condition)
    if kind is ConditionType.GREATER_THAN:
        return length > _threshold(condition)
    if kind is ConditionType.LESS_THAN:
        return length < _threshold(condition)
    raise _UnsupportedCondition(condition.type)


def _eval_keyword_match(condition: TriggerCondition, factors: ScoringFactors) -> bool:
    mentioned = [k.lower() for k in factors.keywords_mentioned]
    if not mentioned:
        return False
    wanted = [v.lower() for v in condition.values]
    kind = _condition_type(condition)
    if kind is ConditionType.CONTAINS_ANY:
        return any(w in k for k in mentioned for w in wanted)
    if kind is ConditionType.CONTAINS_ALL:
        return all(any(w in k for k in mentioned) for w in wanted)
    raise _UnsupportedCondition(condition.type)


def _eval_response_time(condition: TriggerCondition, factors: ScoringFactors) -> bool:
    if factors.response_time_seconds is None:
        return False
    kind = _condition_type(condition)
    if kind is ConditionType.LESS_THAN:
        return factors.response_time_seconds < _threshold(condition)
    if kind is ConditionType.GREATER_THAN:
        return factors.response_time_seconds > _threshold(condition)
    raise _UnsupportedCondition(condition.type)


def _eval_engagement(condition: TriggerCondition, factors: ScoringFactors) -> bool:
    if factors.num_questions_asked is None:
        return False
    asked = factors.num_questions_asked
    kind = _condition_type(condition)
    if kind is ConditionType.GREATER_THAN_OR_EQUAL:
        return asked >= _threshold(condition)
    if kind is ConditionType.GREATER_THAN:
        return asked > _threshold(condition)
    if kind is ConditionType.EQUALS:
        return asked == _threshold(condition)
    raise _UnsupportedCondition(condition.type)


_EVALUATORS: dict[RuleType, Callable[[TriggerCondition, ScoringFactors], bool]] = {
    RuleType.EMAIL_DOMAIN: _eval_email_domain,
    RuleType.PHONE_PROVIDED: _eval_phone_provided,
    RuleType.NOTES_LENGTH: _eval_notes_length,
    RuleType.KEYWORD_MATCH: _eval_keyword_match,
    RuleType.RESPONSE_TIME: _eval_response_time,
    RuleType.ENGAGEMENT: _eval_engagement,
}


def evaluate_rule(rule: ScoringRule, factors: ScoringFactors) -> bool:
    """Return whether *rule* matches *factors*.  Never raises."""
    try:
        evaluator = _EVALUATORS[RuleType(rule.rule_type)]
    except ValueError:
        logger.warning("Unknown rule type %r on rule %r", rule.rule_type, rule.rule_name)
        return False

    try:
        return bool(evaluator(rule.trigger_condition, factors))
    except _UnsupportedCondition as exc:
        logger.warning(
            "Unsupported condition %s for %s rule %r; treating as no match",
            exc, rule.rule_type, rule.rule_name,
        )
    except Exception:
        logger.exception("Error evaluating rule %r", rule.rule_name)
    return False


def apply_rules(rules: list[ScoringRule], factors: ScoringFactors) -> ScoreResult:
    total = 0
    reasoning: list[str] = []
    applied: list[str] = []
    for rule in rules:
        if evaluate_rule(rule, factors):
            total += rule.score_change
            reasoning.append(f"{rule.rule_name} ({_signed(rule.score_change)})")
            applied.append(rule.rule_name)

    score = _clamp(total)
    return ScoreResult(
        score=score, quality=quality_for(score), reasoning=reasoning, applied_rules=applied,
    )


# ── Fallback heuristic ───────────────────────────────────────────────


def fallback_score(factors: ScoringFactors) -> ScoreResult:
    """Hard-coded approximation of the default rules.

    Used whenever organization rules are unavailable.  Unlike the rule
    engine it grades signals on a sliding scale (brief notes still earn a
    few points, a personal email domain earns +5).
    """
    logger.warning("Using fallback lead scoring (database rules unavailable)")
    score = 0
    reasoning: list[str] = []
    applied: list[str] = []

    def add(points: int, reason: str, rule_name: str) -> None:
        nonlocal score
        score += points
        reasoning.append(f"{reason} ({_signed(points)})")
        applied.append(rule_name)

    if factors.email_domain:
        if factors.email_domain.lower() not in FREE_EMAIL_PROVIDERS:
            add(20, "Corporate email domain", "Corporate Email Domain")
        else:
            add(5, "Personal email domain", "Personal Email")

    if factors.phone_provided:
        add(15, "Phone number provided", "Phone Number Provided")

    if factors.notes:
        length = len(factors.notes)
        if length > 100:
            add(15, "Detailed inquiry", "Detailed Inquiry")
        elif length > 30:
            add(10, "Moderate inquiry", "Moderate Inquiry")
        else:
            add(5, "Brief inquiry", "Brief Inquiry")

    if factors.response_time_seconds is not None:
        if factors.response_time_seconds < 30:
            add(15, "Quick responses", "Quick Response Time")
        elif factors.response_time_seconds < 120:
            add(10, "Moderate response time", "Moderate Response Time")

    if factors.num_questions_asked is not None:
        if factors.num_questions_asked >= 3:
            add(20, "Highly engaged (3+ questions)", "High Engagement")
        elif factors.num_questions_asked >= 2:
            add(10, "Engaged (2+ questions)", "Moderate Engagement")

    mentioned = [k.lower() for k in factors.keywords_mentioned]
    if any(h in k for k in mentioned for h in HIGH_INTENT_KEYWORDS):
        add(25, "High purchase intent keywords", "High Intent Keywords")
    elif any(m in k for k in mentioned for m in MEDIUM_INTENT_KEYWORDS):
        add(15, "Medium interest keywords", "Medium Intent Keywords")

    score = _clamp(score)
    return ScoreResult(
        score=score, quality=quality_for(score), reasoning=reasoning, applied_rules=applied,
    )


# ── Engine ───────────────────────────────────────────────────────────


class ScoringEngine:
    """Scores leads against an organization's active rules."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def score(self, factors: ScoringFactors, organization_id: str) -> ScoreResult:
        """Score *factors* for *organization_id*.  Never raises."""
        for attempt in (1, 2):
            try:
                rules = self._store.list_active_rules(organization_id)
            except Exception:
                logger.exception("Failed to fetch scoring rules for org %s", organization_id)
                return fallback_score(factors)

            if rules:
                result = apply_rules(rules, factors)
                logger.info(
                    "Lead scored %d/100 (%s) for org %s via %s",
                    result.score, result.quality.value, organization_id, result.applied_rules,
                )
                return result

            if attempt == 1:
                logger.info("No scoring rules for org %s, seeding defaults", organization_id)
                self.seed_defaults(organization_id)

        logger.warning("Seeding yielded no rules for org %s, using fallback", organization_id)
        return fallback_score(factors)

    def seed_defaults(self, organization_id: str) -> bool:
        """Insert the default rule set.

        Returns ``True`` if this call inserted the rules.  A concurrent
        seeder winning the race (duplicate key) is not an error; any other
        failure is logged and leaves the caller to fall back.
        """
        try:
            self._store.insert_rules(default_rules(organization_id))
        except DuplicateKeyError:
            logger.info("Default rules for org %s already seeded concurrently", organization_id)
            return False
        except Exception:
            logger.exception("Failed to seed default scoring rules for org %s", organization_id)
            return False
        logger.info("Seeded default scoring rules for org %s", organization_id)
        return True

    # ── Owner configuration ──────────────────────────────────────────

    def rules_for(self, organization_id: str) -> tuple[list[ScoringRule], bool]:
        """Return the organization's rules and whether defaults were seeded now.

        Raises :class:`PersistenceFailure` if there are still no rules after
        seeding.
        """
        rules = self._store.list_rules(organization_id)
        if rules:
            return rules, False
        seeded = self.seed_defaults(organization_id)
        rules = self._store.list_rules(organization_id)
        if not rules:
            raise PersistenceFailure(f"No scoring rules available for organization {organization_id}")
        return rules, seeded

    def update_rules(self, organization_id: str, updates: list[RuleUpdate]) -> tuple[list[str], list[str]]:
        """Apply owner edits; returns ``(updated_ids, ignored_ids)``.

        Ids the organization does not own are ignored, never touched.
        """
        updated: list[str] = []
        ignored: list[str] = []
        for update in updates:
            if self._store.update_rule(organization_id, update) is None:
                logger.warning("Rule %s not found for org %s; skipped", update.id, organization_id)
                ignored.append(update.id)
            else:
                updated.append(update.id)
        logger.info("Updated %d scoring rules for org %s", len(updated), organization_id)
        return updated, ignored
