from __future__ import annotations

import argparse
import csv
from pathlib import Path

from services.ami.app.db.database import db_session
from services.ami.app.db.init_db import init_db
from services.ami.app.services import command_import
from services.ami.app.services.authz_factory import get_authorizer
from services.ami.app.services.meter_registry import DbMeterRegistry


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Stage and validate a CSV of meter commands (columns: command,meter_serial_no)"
    )
    parser.add_argument("csv_path", type=Path)
    parser.add_argument("--created-by", required=True)
    args = parser.parse_args()

    init_db()

    with args.csv_path.open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))

    db = db_session()
    try:
        batch_id = command_import.stage_command_batch(
            db,
            file_name=args.csv_path.name,
            created_by=args.created_by,
            rows=rows,
            authorizer=get_authorizer(db),
        )
        batch = command_import.validate_batch(db, batch_id, registry=DbMeterRegistry(db))
        print(
            f"batch={batch_id} status={batch.status.value} "
            f"valid={batch.valid_count} invalid={batch.invalid_count}"
        )
        for row in command_import.list_batch_rows(db, batch_id):
            if row.errors:
                print(f"  row {row.staging_id} {row.row_status.value}: {'; '.join(row.errors)}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
