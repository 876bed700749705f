import argparse
import sys

from sqlalchemy.exc import DBAPIError

from ndiscare.config import settings
from ndiscare.core.logging_config import setup_logging
from ndiscare.db import create_db_engine
from ndiscare.tenant_guard import apply_composite_foreign_keys


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply composite (id, tenant_id) foreign keys")
    parser.add_argument("--database-url", default=settings.DATABASE_URL)
    args = parser.parse_args()

    setup_logging()
    engine = create_db_engine(args.database_url)
    try:
        result = apply_composite_foreign_keys(engine)
    except DBAPIError as exc:
        print(f"[FAIL] Composite key migration rolled back: {exc.orig}")
        return 1
    finally:
        engine.dispose()

    print(f"[PASS] Applied {result['applied']} statements, skipped {len(result['skipped'])}")
    if result["constraints"]:
        print(f"[INFO] {len(result['constraints'])} tenant-scoped foreign keys in place")
    else:
        print("[WARN] No tenant-scoped foreign keys found; is the schema created?")
    return 0


if __name__ == "__main__":
    sys.exit(main())
