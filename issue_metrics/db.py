import re
from typing import Dict

from sqlalchemy import create_engine, text

from .config import settings


_VERSION_RE = re.compile(r"^(\d+(?:\.\d+)?)")

engine = create_engine(settings.database_url, pool_pre_ping=True)


def _parse_pg_version(raw: str) -> str:
    match = _VERSION_RE.match(raw.strip())
    return match.group(1) if match else raw.strip()


def fetch_db_info() -> Dict[str, object]:
    with engine.connect() as conn:
        server_version_raw = conn.execute(text("SHOW server_version")).scalar()
        job_tables = conn.execute(
            text(
                "SELECT table_name "
                "FROM information_schema.tables "
                "WHERE table_name IN ('ingestion_jobs', 'work_items')"
            )
        ).scalars().all()

    return {
        "server_version_raw": server_version_raw,
        "server_version": _parse_pg_version(server_version_raw),
        "tables": sorted(job_tables),
    }
