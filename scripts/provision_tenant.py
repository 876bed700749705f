import argparse
import getpass
import sys

from ndiscare.core.logging_config import setup_logging
from ndiscare.db import Base, SessionLocal, engine
from ndiscare.services import provision_tenant


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a tenant with its first Admin user")
    parser.add_argument("slug")
    parser.add_argument("name")
    parser.add_argument("--admin-username", default="admin")
    parser.add_argument("--admin-full-name", default="Administrator")
    parser.add_argument("--admin-email", default=None)
    args = parser.parse_args()

    setup_logging()
    Base.metadata.create_all(bind=engine)
    password = getpass.getpass("Admin password: ")
    with SessionLocal() as db:
        try:
            tenant, admin = provision_tenant(
                db,
                slug=args.slug,
                name=args.name,
                admin_username=args.admin_username,
                admin_password=password,
                admin_full_name=args.admin_full_name,
                admin_email=args.admin_email,
            )
        except ValueError as exc:
            print(f"[FAIL] {exc}")
            return 1
    print(f"[PASS] Tenant {tenant.slug} (id={tenant.id}) with admin {admin.username}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
