import argparse
from typing import Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from bistro_pos import models  # noqa: F401
from bistro_pos.config import settings
from bistro_pos.db import Base, init_db


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check the POS database connection.")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--create-tables", action="store_true")
    args = parser.parse_args(argv)

    print(f"DATABASE_URL={args.database_url}")
    engine = create_engine(args.database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if args.create_tables:
            init_db(engine)
            print("Tables created")
        existing = set(inspect(engine).get_table_names())
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return 1
    finally:
        engine.dispose()

    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        print(f"Missing tables: {', '.join(missing)}")
        return 1
    print("Schema OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
