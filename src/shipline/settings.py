from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///.shipline/history.db"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_QUEUE_NAME = "shipline:runs"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: str = DEFAULT_REDIS_URL
    queue_name: str = DEFAULT_QUEUE_NAME
    store_dir: str = ".shipline/artifacts"
    work_dir: str = ".shipline/work"
    deploy_dir: str = ".shipline/deploy"
    max_workers: Optional[int] = None
    retries: int = 3
    backoff: float = 0.5
    policy_file: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        workers = env.get("SHIPLINE_MAX_WORKERS")
        return cls(
            database_url=env.get("SHIPLINE_DATABASE_URL", DEFAULT_DATABASE_URL),
            redis_url=env.get("SHIPLINE_REDIS_URL", DEFAULT_REDIS_URL),
            queue_name=env.get("SHIPLINE_QUEUE_NAME", DEFAULT_QUEUE_NAME),
            store_dir=env.get("SHIPLINE_STORE_DIR", ".shipline/artifacts"),
            work_dir=env.get("SHIPLINE_WORK_DIR", ".shipline/work"),
            deploy_dir=env.get("SHIPLINE_DEPLOY_DIR", ".shipline/deploy"),
            max_workers=int(workers) if workers else None,
            retries=int(env.get("SHIPLINE_RETRIES", "3")),
            backoff=float(env.get("SHIPLINE_BACKOFF", "0.5")),
            policy_file=env.get("SHIPLINE_POLICY_FILE") or None,
        )
