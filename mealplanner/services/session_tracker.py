"""
Generation session and background job tracking.

The single GenerationSession row doubles as a crash breadcrumb:
- generation_started_at set, no pool: a generation was running
- pool set: the user was choosing recipes

On startup a fresh breadcrumb is reported as interrupted (retry offered,
never auto-resumed), a stale one is deleted, and a persisted pool is
rehydrated.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import GenerationSession, MealPlan, PendingJob, utcnow, as_utc
from ..schemas import RecipePool
from ..settings import settings

logger = logging.getLogger("mealplanner.session")

SESSION_ID = 1

JOB_MEAL_GENERATION = "meal_generation"
JOB_SHOPPING_CONSOLIDATION = "shopping_consolidation"

StartupKind = Literal["none", "discarded", "interrupted", "restored"]


@dataclass
class StartupStatus:
    kind: StartupKind
    pool: Optional[RecipePool] = None
    selected_indices: list[int] = field(default_factory=list)
    started_at: Optional[datetime] = None
    # Meal plans whose consolidation was killed and still lack a list
    pending_consolidations: list[str] = field(default_factory=list)


def _stale_cutoff(now: datetime) -> datetime:
    return now - timedelta(minutes=settings.session_stale_minutes)


def load_session(db: Session) -> Optional[GenerationSession]:
    return db.get(GenerationSession, SESSION_ID)


def _upsert(db: Session) -> GenerationSession:
    session = load_session(db)
    if session is None:
        session = GenerationSession(id=SESSION_ID, selected_indices=[])
        db.add(session)
    return session


def start_generation(db: Session, now: Optional[datetime] = None) -> GenerationSession:
    """Write the breadcrumb before the first model call."""
    session = _upsert(db)
    session.generation_started_at = now or utcnow()
    session.pool_json = None
    session.selected_indices = []
    session.saved_at = now or utcnow()
    db.commit()
    return session


def save_pool(
    db: Session,
    pool: RecipePool,
    selected_indices: list[int],
    now: Optional[datetime] = None,
) -> GenerationSession:
    """Persist the pool and selection; clears the breadcrumb."""
    session = _upsert(db)
    session.pool_json = pool.model_dump(mode="json", by_alias=True)
    session.selected_indices = list(selected_indices)
    session.generation_started_at = None
    session.saved_at = now or utcnow()
    db.commit()
    return session


def save_selection(db: Session, selected_indices: list[int], now: Optional[datetime] = None) -> bool:
    """Update only the selection. Returns False when there is no pool to attach it to."""
    session = load_session(db)
    if session is None or session.pool_json is None:
        return False
    session.selected_indices = list(selected_indices)
    session.saved_at = now or utcnow()
    db.commit()
    return True


def clear_session(db: Session, commit: bool = True):
    db.query(GenerationSession).delete(synchronize_session=False)
    if commit:
        db.commit()


def _rehydrate(session: GenerationSession) -> Optional[RecipePool]:
    if session.pool_json is None:
        return None
    try:
        return RecipePool.model_validate(session.pool_json)
    except ValidationError as e:
        logger.error(f"Persisted recipe pool is unreadable, discarding: {e.error_count()} error(s)")
        return None


# --- Pending jobs ---

def begin_job(db: Session, job_type: str, related_id: Optional[str] = None, now: Optional[datetime] = None) -> PendingJob:
    job = PendingJob(job_type=job_type, related_id=related_id, started_at=now or utcnow())
    db.add(job)
    db.commit()
    return job


def finish_job(db: Session, job_id: str):
    db.query(PendingJob).filter(PendingJob.id == job_id).delete(synchronize_session=False)
    db.commit()


def pending_jobs(db: Session, job_type: Optional[str] = None) -> list[PendingJob]:
    query = select(PendingJob).order_by(PendingJob.started_at)
    if job_type:
        query = query.where(PendingJob.job_type == job_type)
    return db.scalars(query).all()


def _recover_jobs(db: Session, now: datetime) -> list[str]:
    """
    Leftover job rows mean the process died mid-job. Stale ones are dropped,
    fresh consolidation jobs whose plan still lacks a list are reported.
    """
    cutoff = _stale_cutoff(now)
    retry = []
    for job in pending_jobs(db):
        started = as_utc(job.started_at)
        if started < cutoff:
            logger.info(f"Dropping stale {job.job_type} job from {started.isoformat()}")
            db.delete(job)
            continue
        if job.job_type == JOB_SHOPPING_CONSOLIDATION and job.related_id:
            plan = db.get(MealPlan, job.related_id)
            if plan is not None and plan.shopping_list_generated_at is None:
                retry.append(plan.id)
                continue
            db.delete(job)
        elif job.job_type == JOB_MEAL_GENERATION:
            # The session breadcrumb carries this state
            db.delete(job)
    db.commit()
    return retry


def check_on_startup(db: Session, now: Optional[datetime] = None) -> StartupStatus:
    now = now or utcnow()
    pending = _recover_jobs(db, now)

    session = load_session(db)
    if session is None:
        return StartupStatus(kind="none", pending_consolidations=pending)

    if session.pool_json is not None:
        loaded = load_pool(db)
        if loaded is not None:
            pool, selected = loaded
            return StartupStatus(
                kind="restored",
                pool=pool,
                selected_indices=selected,
                pending_consolidations=pending,
            )
        clear_session(db)
        return StartupStatus(kind="discarded", pending_consolidations=pending)

    started = as_utc(session.generation_started_at)
    if started is None or started < _stale_cutoff(now):
        logger.info("Discarding stale generation session")
        clear_session(db)
        return StartupStatus(kind="discarded", started_at=started, pending_consolidations=pending)

    logger.info(f"Generation started at {started.isoformat()} was interrupted")
    return StartupStatus(kind="interrupted", started_at=started, pending_consolidations=pending)


def load_pool(db: Session) -> Optional[tuple[RecipePool, list[int]]]:
    """Persisted pool and in-range selection, or None."""
    session = load_session(db)
    if session is None:
        return None
    pool = _rehydrate(session)
    if pool is None:
        return None
    size = len(pool.recipes)
    return pool, [i for i in (session.selected_indices or []) if 0 <= i < size]
