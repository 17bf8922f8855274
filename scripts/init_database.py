#!/usr/bin/env python3
"""
Initialize the Library Circulation database.

This script:
1. Creates all database tables and the loan configuration row
2. Optionally loads sample materials, copies and members
3. Verifies the database is ready for MCP server use

Usage:
    python scripts/init_database.py [--drop-existing] [--sample-data]
"""

import argparse
import logging
import sys
from pathlib import Path

# Allow running from a source checkout without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sqlalchemy import inspect

from library_circulation.database import (
    DatabaseManager,
    Material,
    MaterialCopy,
    Member,
    get_db_manager,
)
from library_circulation.models import AccountState, CopyCondition, MemberCondition

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = {
    "materials",
    "members",
    "material_copies",
    "loans",
    "reservations",
    "fines",
    "loan_configuration",
    "circulation_events",
}


def main() -> None:
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(
        description="Initialize the Library Circulation MCP Server database"
    )
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before creating new ones",
    )
    parser.add_argument(
        "--sample-data",
        action="store_true",
        help="Load sample materials, copies and members after creating tables",
    )
    parser.add_argument(
        "--database-url",
        help="Override default database URL",
    )

    args = parser.parse_args()

    logger.info("Initializing database manager...")
    db_manager = get_db_manager(args.database_url)

    if not db_manager.verify_connection():
        logger.error("Failed to connect to database")
        sys.exit(1)

    try:
        logger.info("Creating database schema...")
        db_manager.init_database(drop_existing=args.drop_existing)

        if args.sample_data:
            logger.info("Loading sample data...")
            load_sample_data(db_manager)

        tables = set(inspect(db_manager.engine).get_table_names())
        logger.info("Tables: %s", ", ".join(sorted(tables)))
        missing_tables = EXPECTED_TABLES - tables
        if missing_tables:
            logger.error("Missing expected tables: %s", missing_tables)
            sys.exit(1)

        logger.info("Database initialization complete")

    except Exception:
        logger.exception("Database initialization failed")
        sys.exit(1)
    finally:
        db_manager.close()


def load_sample_data(db_manager: DatabaseManager) -> None:
    """
    Load a small catalog and member list for trying out the tools.

    The catalog and membership systems own these rows in production; loans,
    holds and fines are left for the circulation tools to create.
    """
    with db_manager.session_scope() as session:
        session.add_all(
            [
                Material(id="material_gatsby", title="The Great Gatsby"),
                Material(id="material_mockingbird", title="To Kill a Mockingbird"),
                Material(id="material_atlas", title="World Atlas", max_loan_days=7),
            ]
        )
        session.flush()

        session.add_all(
            [
                MaterialCopy(id="copy_gatsby_1", material_id="material_gatsby"),
                MaterialCopy(
                    id="copy_gatsby_2", material_id="material_gatsby", condition=CopyCondition.NEW
                ),
                MaterialCopy(id="copy_mockingbird_1", material_id="material_mockingbird"),
                MaterialCopy(
                    id="copy_atlas_1", material_id="material_atlas", condition=CopyCondition.FAIR
                ),
            ]
        )

        session.add_all(
            [
                Member(id="member_smith", name="Jane Smith"),
                Member(id="member_jones", name="Robert Jones"),
                Member(
                    id="member_brown",
                    name="Alex Brown",
                    account_state=AccountState.SUSPENDED,
                ),
                Member(
                    id="member_davis",
                    name="Sam Davis",
                    conditions=[MemberCondition.LOST_COPY.value],
                ),
            ]
        )

    logger.info("Sample data loaded: 3 materials, 4 copies, 4 members")


if __name__ == "__main__":
    main()
