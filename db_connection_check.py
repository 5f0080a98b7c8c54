import argparse

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from lpg_backend.config import settings
from lpg_backend.db import create_tables


def main() -> None:
    parser = argparse.ArgumentParser(description="Check the database connection")
    parser.add_argument("--create-tables", action="store_true", help="create missing tables after the check")
    args = parser.parse_args()

    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if args.create_tables:
            create_tables(bind=engine)
            print("Tables created")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
