"""Adaptive per-actor turn limits.

Decides whether an actor may take another turn this cycle from its running
productivity counters. Pure functions of the counters: no clock, no state,
so the rules can be checked with a flat table of inputs.
"""

from __future__ import annotations

from src.core.models import LimitDecision, ProductivityCounters

MIN_EXPLORATION_TURNS = 2
HIGH_PRODUCTIVITY_SCORE = 0.7
HIGH_PRODUCTIVITY_BONUS = 2
LOW_PRODUCTIVITY_SCORE = 0.1
LOW_PRODUCTIVITY_MIN_TURNS = 5
READ_LOOP_RATIO = 5
READ_LOOP_MIN_TURNS = 4


def calculate_productivity_score(counters: ProductivityCounters) -> float:
    """Score in [0, 1]. Edits and writes raise it; read-only or self-pass churn lowers it."""
    turns = max(counters.turns_used, 1)
    productive = counters.file_edits + counters.file_writes
    read_ratio = counters.file_reads / turns
    pass_ratio = counters.self_passes / turns

    score = 0.6 * min(productive / 3, 1.0)
    if read_ratio > 3 and productive == 0:
        score -= 0.3
    if pass_ratio > 0.5 and productive == 0:
        score -= 0.2
    if productive > 0 and read_ratio < 2:
        score += 0.2

    return min(max(score, 0.0), 1.0)


def should_continue(counters: ProductivityCounters, base_limit: int = 6) -> LimitDecision:
    """Apply the turn-limit rules in order and return the first that decides."""
    used = counters.turns_used

    if used < MIN_EXPLORATION_TURNS:
        return LimitDecision(
            should_continue=True,
            reason="minimum exploration",
            turns_remaining=max(base_limit - used, 0),
            score=calculate_productivity_score(counters),
        )

    score = calculate_productivity_score(counters)

    if used >= base_limit and score < HIGH_PRODUCTIVITY_SCORE:
        return LimitDecision(
            should_continue=False, reason="base limit reached", turns_remaining=0, score=score,
        )

    if score >= HIGH_PRODUCTIVITY_SCORE:
        extended = base_limit + HIGH_PRODUCTIVITY_BONUS
        if used >= extended:
            return LimitDecision(
                should_continue=False,
                reason="extended limit reached",
                turns_remaining=0,
                score=score,
            )
        return LimitDecision(
            should_continue=True,
            reason="high productivity",
            turns_remaining=extended - used,
            score=score,
        )

    if score < LOW_PRODUCTIVITY_SCORE and used >= LOW_PRODUCTIVITY_MIN_TURNS:
        return LimitDecision(
            should_continue=False,
            reason="low productivity, save cost",
            turns_remaining=0,
            score=score,
        )

    no_output = counters.file_edits == 0 and counters.file_writes == 0
    if counters.file_reads / used > READ_LOOP_RATIO and no_output and used >= READ_LOOP_MIN_TURNS:
        return LimitDecision(
            should_continue=False,
            reason="infinite read loop detected",
            turns_remaining=0,
            score=score,
        )

    return LimitDecision(
        should_continue=True,
        reason="within base limit",
        turns_remaining=max(base_limit - used, 0),
        score=score,
    )


def productivity_summary(counters: ProductivityCounters) -> str:
    """One-line rating for logs and briefings."""
    score = calculate_productivity_score(counters)
    if score >= HIGH_PRODUCTIVITY_SCORE:
        rating = "highly productive"
    elif score >= 0.4:
        rating = "productive"
    elif score >= 0.2:
        rating = "low productivity"
    else:
        rating = "wasteful"
    return (
        f"{rating} (score {score:.2f}; turns={counters.turns_used} "
        f"reads={counters.file_reads} edits={counters.file_edits} "
        f"writes={counters.file_writes} self_passes={counters.self_passes})"
    )
