# app/db/init_db.py
from __future__ import annotations

import argparse

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from app.db.session import engine as default_engine
from app.db.base import Base, import_models

# Permission codes the ledger routes check (the auth service issues them)
LEDGER_PERMISSIONS = [
    "billing.view",
    "billing.create",
    "billing.cancel",
    "billing.payments.create",
    "mpesa.read",
    "mpesa.write",
    "mpesa.allocate",
    "mpesa.admin",
]


def print_tables(bind: Engine) -> set:
    names = inspect(bind).get_table_names()
    print("Existing tables:", names)
    return set(names)


def create_tables(bind: Engine | None = None, *, fresh: bool = False) -> None:
    bind = bind or default_engine
    import_models()
    if fresh:
        Base.metadata.drop_all(bind=bind)
    Base.metadata.create_all(bind=bind)


def run(fresh: bool = False) -> None:
    if fresh:
        print("WARNING: Dropping ALL tables (dev only) …")

    print("Creating all missing tables …")
    create_tables(fresh=fresh)
    print_tables(default_engine)
    print("Permission codes expected in tokens:", ", ".join(LEDGER_PERMISSIONS))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Initialize ledger DB (create tables).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    args = parser.parse_args()
    run(fresh=args.fresh)
