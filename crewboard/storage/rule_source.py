import logging
from typing import Optional

from sqlalchemy.orm import Session

from crewboard.engine.board import BoardService
from crewboard.engine.default_rules import default_rule_tables
from crewboard.engine.rule_registry import RuleSnapshot
from crewboard.models.rules import RuleTables
from crewboard.storage.cache import RuleCache
from crewboard.storage.repositories import JobRepository, ResourceRepository, RuleRepository

logger = logging.getLogger(__name__)


def fetch_rule_tables(
    source: str,
    db: Optional[Session] = None,
    cache: Optional[RuleCache] = None,
    use_cache: bool = True,
    ttl_seconds: int = 3600,
) -> RuleTables:
    """
    Read the rule tables from their source. Runs outside any engine critical
    section; the result is handed to RuleRegistry.load.
    """
    if source == "defaults":
        return default_rule_tables()
    if source != "database":
        raise ValueError(f"Unknown rule source: {source}")

    if cache is not None and use_cache:
        cached = cache.get()
        if cached is not None:
            logger.info(f"Rule cache hit ({RuleCache.fingerprint(cached)})")
            return cached

    if db is None:
        raise ValueError("A database session is required for the database rule source")
    tables = RuleRepository(db).load_tables()
    if cache is not None:
        cache.set(tables, ttl_seconds)
    return tables


def reload_rules(board: BoardService, source: str, db: Optional[Session] = None,
                 cache: Optional[RuleCache] = None, ttl_seconds: int = 3600) -> RuleSnapshot:
    """Explicit reload: bypasses the cache, refreshes it, then swaps the registry snapshot."""
    tables = fetch_rule_tables(source, db=db, cache=cache, use_cache=False, ttl_seconds=ttl_seconds)
    return board.load_rules(tables)


def seed_board(board: BoardService, db: Session) -> None:
    """Copy resources and jobs from the database into the board."""
    resources = ResourceRepository(db).list_all()
    jobs = JobRepository(db).list_all()
    for resource in resources:
        board.upsert_resource(resource)
    for job in jobs:
        board.upsert_job(job)
    logger.info(f"Board seeded with {len(resources)} resources and {len(jobs)} jobs")
