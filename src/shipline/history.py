from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import RunNotFound
from .model import JobState, PromotionDecision, Run, RunStatus, now_utc
from .settings import DEFAULT_DATABASE_URL


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    ref: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    workflow: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class JobStateRow(Base):
    __tablename__ = "job_states"
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    job_id: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    # started/finished/exit code/reason/log/artifact refs, as JobState.to_dict()
    state_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False)


class PromotionRow(Base):
    __tablename__ = "promotions"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    environment: Mapped[str] = mapped_column(sa.Text, nullable=False)
    approved: Mapped[bool] = mapped_column(sa.Boolean, nullable=False)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False)
    decided_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class RunHistory:
    """
    Persistent Run records keyed by run id, plus promotion decisions.
    Saved after every state change so a crashed run can still be audited.
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL):
        self.url = make_url(url)
        self.engine = create_async_engine(self.url)
        self.sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def init(self) -> None:
        if self.url.get_backend_name() == "sqlite" and self.url.database not in (None, "", ":memory:"):
            Path(self.url.database).parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # ---- runs ----

    async def save(self, run: Run) -> None:
        async with self.sessions() as s:
            async with s.begin():
                row = await s.get(RunRow, run.run_id)
                if row is None:
                    row = RunRow(id=run.run_id, created_at=run.created_at)
                    s.add(row)
                row.ref = run.ref
                row.workflow = run.workflow
                row.status = run.status.value
                row.reason = run.reason
                row.started_at = run.started_at
                row.finished_at = run.finished_at

                await s.execute(sa.delete(JobStateRow).where(JobStateRow.run_id == run.run_id))
                s.add_all(
                    JobStateRow(
                        run_id=run.run_id,
                        job_id=job_id,
                        position=pos,
                        status=state.status.value,
                        state_json=state.to_dict(),
                    )
                    for pos, (job_id, state) in enumerate(run.job_states.items())
                )

    async def load(self, run_id: str) -> Run:
        async with self.sessions() as s:
            row = await s.get(RunRow, run_id)
            if row is None:
                raise RunNotFound(run_id)
            q = (
                sa.select(JobStateRow)
                .where(JobStateRow.run_id == run_id)
                .order_by(JobStateRow.position)
            )
            states = (await s.execute(q)).scalars().all()
            return self._to_run(row, states)

    async def list_runs(self, limit: int = 20) -> List[Run]:
        async with self.sessions() as s:
            q = sa.select(RunRow).order_by(RunRow.created_at.desc()).limit(limit)
            rows = (await s.execute(q)).scalars().all()
        return [await self.load(r.id) for r in rows]

    @staticmethod
    def _to_run(row: RunRow, states) -> Run:
        return Run(
            run_id=row.id,
            ref=row.ref,
            workflow=row.workflow,
            status=RunStatus(row.status),
            reason=row.reason or "",
            job_states={st.job_id: JobState.from_dict(st.state_json) for st in states},
            created_at=_aware(row.created_at),
            started_at=_aware(row.started_at),
            finished_at=_aware(row.finished_at),
        )

    # ---- promotions ----

    async def record_promotion(self, decision: PromotionDecision) -> None:
        async with self.sessions() as s:
            async with s.begin():
                if await s.get(RunRow, decision.run.run_id) is None:
                    raise RunNotFound(decision.run.run_id)
                s.add(
                    PromotionRow(
                        run_id=decision.run.run_id,
                        environment=decision.target_environment,
                        approved=decision.approved,
                        reason=decision.reason,
                        decided_at=now_utc(),
                    )
                )

    async def promotions(self, run_id: str) -> List[Dict[str, Any]]:
        async with self.sessions() as s:
            q = (
                sa.select(PromotionRow)
                .where(PromotionRow.run_id == run_id)
                .order_by(PromotionRow.id)
            )
            rows = (await s.execute(q)).scalars().all()
        return [
            {
                "environment": r.environment,
                "approved": r.approved,
                "reason": r.reason,
                "decided_at": _aware(r.decided_at).isoformat(),
            }
            for r in rows
        ]
