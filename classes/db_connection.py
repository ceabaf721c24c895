from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from supabase import Client, create_client

from classes.entities import Base
from classes.settings import (
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_URL,
    build_database_url,
    logger,
)


class DbConnection:
    def __init__(self, database_url: str | None = None) -> None:
        # !###############################################
        # !   EITHER A DATABASE_URL IN THE .ENV FILE OR
        # !   THE DB_* PARTS (SUPABASE POSTGRES, PG8000)
        # !###############################################
        self.DATABASE_URL = database_url or build_database_url()
        self._sessionmaker = None

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if not self._sessionmaker:
            engine = create_engine(self.DATABASE_URL, future=True, pool_pre_ping=True)
            Base.metadata.create_all(engine)
            logger.info("[DB] Session factory ready for %s", engine.url.render_as_string(hide_password=True))
            self._sessionmaker = sessionmaker(
                bind=engine,
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory


# -------- Supabase (service role) --------
def build_supabase_client() -> Client:
    if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
        raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
    return create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)


class SupabaseStorage:
    """
    Thin helpers over a Supabase storage bucket.
    """

    def __init__(self, client: Client, bucket_name: str) -> None:
        self.client = client
        self.bucket_name = bucket_name

    def download_text(self, object_path: str) -> str | None:
        try:
            data = self.client.storage.from_(self.bucket_name).download(object_path)
        except Exception as e:
            # missing object is the normal case for a fresh JSONL file
            logger.info("Storage download skipped for %s: %s", object_path, e)
            return None
        return data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else str(data)

    def upload_text(self, object_path: str, content: str,
                    content_type: str = "application/x-ndjson") -> str:
        self.client.storage.from_(self.bucket_name).upload(
            object_path,
            content.encode("utf-8"),
            {"content-type": content_type, "upsert": "true"},
        )
        return f"{self.bucket_name}/{object_path}"

    def append_line(self, object_path: str, line: str) -> str:
        existing = self.download_text(object_path) or ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        return self.upload_text(object_path, existing + line.rstrip("\n") + "\n")
