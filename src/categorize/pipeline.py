"""Categorization pipeline: rule match, then AI, then confidence routing.

Per transaction:
1. Merchant rule: exact (0.95) or partial (0.85) match plus learned boost
2. AI categorization: Claude distribution over all categories (cached)
3. Routing: confidence >= threshold is approved, otherwise pending review

Batches fan out over a fixed pool of worker threads. Workers claim the next
index from a shared counter and write results back by index, so output
order always matches input order. A failure while categorizing one
transaction produces an error result for that index only; the batch always
returns one result per input.

Everything a run needs (repository, categories, threshold, AI categorizer,
cache) travels on a PipelineContext rather than module-level state.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from src.categorize.cache import CategorizationCache, LRUCache
from src.categorize.claude_ai import AICategorizer, ClaudeFn, uniform_distribution
from src.categorize.learner import RuleUpdate, learn_rule
from src.categorize.merchant_match import match_rule
from src.categorize.router import (
    DEFAULT_THRESHOLD,
    METHOD_AI,
    METHOD_AI_FALLBACK,
    METHOD_ERROR,
    CategorizationResult,
    Routing,
    error_result,
    result_from_probabilities,
    result_from_rule,
)
from src.config import DEFAULT_CONCURRENCY, Config
from src.database.models import Category
from src.database.repository import Repository
from src.parsers.normalizer import NormalizedTransaction

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 10

ProgressCallback = Callable[[int, int], None]


@dataclass
class PipelineContext:
    """Dependencies for one categorization run."""
    repo: Repository
    categories: list[Category]
    threshold: float = DEFAULT_THRESHOLD
    ai_categorizer: AICategorizer | None = None
    cache: CategorizationCache | None = None
    concurrency: int = DEFAULT_CONCURRENCY
    auto_learn: bool = True
    auto_boost: float = 0.0

    @classmethod
    def from_config(
        cls,
        repo: Repository,
        config: Config,
        claude_fn: ClaudeFn | None = None,
        cache: CategorizationCache | None = None,
    ) -> PipelineContext:
        """Build a context from config, syncing categories into the database."""
        repo.sync_categories(config.categories)
        categories = repo.get_categories()
        cache = cache if cache is not None else LRUCache(config.ai_cache_size)
        ai = AICategorizer(claude_fn, categories, cache) if claude_fn and categories else None
        learning = config.learning
        return cls(
            repo=repo,
            categories=categories,
            threshold=config.confidence_threshold,
            ai_categorizer=ai,
            cache=cache,
            concurrency=config.concurrency,
            auto_learn=bool(learning["auto_learn"]),
            auto_boost=float(learning["auto_boost"]),
        )


@dataclass
class BatchStats:
    total: int = 0
    completed: int = 0
    rule_hits: int = 0
    ai_calls: int = 0
    failures: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class BatchCategorization:
    results: list[CategorizationResult] = field(default_factory=list)
    stats: BatchStats = field(default_factory=BatchStats)

    @property
    def approved_count(self) -> int:
        return sum(1 for r in self.results if r.routing is Routing.APPROVED)

    @property
    def pending_review_count(self) -> int:
        return sum(1 for r in self.results if r.routing is Routing.PENDING_REVIEW)


def categorize_transaction(
    txn: NormalizedTransaction,
    user_id: str,
    context: PipelineContext,
) -> CategorizationResult:
    """Categorize a single transaction.

    Storage errors during the rule lookup propagate to the caller.
    """
    match = match_rule(txn.merchant, user_id, context.repo)
    if match is not None:
        return result_from_rule(match, context.categories, context.threshold)

    if context.ai_categorizer is None:
        logger.debug("No AI categorizer configured, '%s' gets uniform fallback", txn.merchant)
        return result_from_probabilities(
            uniform_distribution(context.categories), context.threshold, fallback=True,
        )

    outcome = context.ai_categorizer.categorize_detailed(
        txn.merchant, txn.amount_raw, txn.date, txn.is_credit or txn.is_payment,
    )
    return result_from_probabilities(
        outcome.probabilities, context.threshold, fallback=outcome.fallback,
    )


def categorize_batch(
    transactions: list[NormalizedTransaction],
    user_id: str,
    context: PipelineContext,
    on_progress: ProgressCallback | None = None,
) -> BatchCategorization:
    """Categorize every transaction with a bounded worker pool.

    Returns exactly one result per input, in input order.
    """
    total = len(transactions)
    stats = BatchStats(total=total)
    results: list[CategorizationResult | None] = [None] * total
    if total == 0:
        return BatchCategorization(results=[], stats=stats)

    lock = threading.Lock()
    next_index = 0
    started = time.monotonic()

    def _claim() -> int | None:
        nonlocal next_index
        with lock:
            if next_index >= total:
                return None
            idx = next_index
            next_index += 1
            return idx

    def _record(idx: int, result: CategorizationResult) -> None:
        results[idx] = result
        with lock:
            stats.completed += 1
            if result.used_rule:
                stats.rule_hits += 1
            elif result.method in (METHOD_AI, METHOD_AI_FALLBACK):
                stats.ai_calls += 1
            elif result.method == METHOD_ERROR:
                stats.failures += 1
            completed = stats.completed
        if completed % PROGRESS_LOG_INTERVAL == 0 or completed == total:
            logger.info("Categorized %d/%d transactions", completed, total)
        if on_progress is not None:
            try:
                on_progress(completed, total)
            except Exception:
                logger.exception("Progress callback failed at %d/%d", completed, total)

    def _worker() -> None:
        while True:
            idx = _claim()
            if idx is None:
                return
            txn = transactions[idx]
            try:
                result = categorize_transaction(txn, user_id, context)
            except Exception:
                logger.exception("Categorization failed for '%s'", txn.merchant)
                result = error_result()
            _record(idx, result)

    workers = max(1, min(context.concurrency, total))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_worker) for _ in range(workers)]
        for fut in futures:
            fut.result()

    stats.elapsed_seconds = time.monotonic() - started
    logger.info(
        "Batch done: %d total, %d rule hits, %d AI, %d failures in %.2fs",
        stats.total, stats.rule_hits, stats.ai_calls, stats.failures,
        stats.elapsed_seconds,
    )
    return BatchCategorization(results=results, stats=stats)


def learn_from_results(
    transactions: list[NormalizedTransaction],
    results: list[CategorizationResult],
    user_id: str,
    context: PipelineContext,
) -> int:
    """Teach automatic rules from AI results that were auto-approved.

    Returns the number of rules created or updated.
    """
    if not context.auto_learn:
        return 0
    learned = 0
    seen: set[str] = set()
    for txn, result in zip(transactions, results):
        if (
            result.method != METHOD_AI
            or result.routing is not Routing.APPROVED
            or result.category_id is None
            or txn.merchant in seen
        ):
            continue
        seen.add(txn.merchant)
        outcome = learn_rule(
            context.repo, txn.merchant, result.category_id, user_id,
            confidence_boost=context.auto_boost, from_manual_override=False,
        )
        if outcome in (RuleUpdate.CREATED, RuleUpdate.UPDATED):
            learned += 1
    return learned
