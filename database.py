"""
=============================================================================
DATABASE.PY — Database connection
=============================================================================
In DEVELOPMENT: SQLite (a local .db file)
In PRODUCTION: PostgreSQL through the psycopg (v3) driver

Which one is used depends on DATABASE_URL (see config.py).
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from config import DATABASE_URL


def enable_sqlite_savepoints(engine):
    """
    pysqlite delays BEGIN until the first write, which breaks SAVEPOINT
    (session.begin_nested). Let SQLAlchemy emit BEGIN itself instead.
    """
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine

# ─────────────────────────────────────────────────────────────────────────────
# CONNECTION
# ─────────────────────────────────────────────────────────────────────────────

# Hosting providers hand out "postgres://" URLs; SQLAlchemy wants the driver
# spelled out.
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

engine_args = {}
if DATABASE_URL.startswith("sqlite"):
    # SQLite refuses cross-thread use by default; FastAPI runs sync routes
    # in a thread pool.
    engine_args["connect_args"] = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, echo=False, **engine_args)
if DATABASE_URL.startswith("sqlite"):
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    FastAPI dependency: one session per request, always closed.

      @app.get("/something")
      def endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create every table that does not exist yet."""
    import models  # noqa: F401  (registers the tables on Base.metadata)

    Base.metadata.create_all(bind=engine)
