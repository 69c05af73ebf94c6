from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from consortium.domain.models import DataProduct, Institution
from consortium.persistence.db import SessionLocal


@dataclass(frozen=True)
class DemoInstitution:
    id: str
    name: str
    tenant_id: str
    purview_account_name: str | None
    fabric_workspace_id: str | None
    primary_contact_email: str


@dataclass(frozen=True)
class DemoProduct:
    id: str
    institution_id: str
    qualified_name: str
    name: str
    description: str
    source_lakehouse_id: str | None


def build_demo_institutions() -> tuple[DemoInstitution, ...]:
    # Two members: one publishes products, the other only consumes them.
    return (
        DemoInstitution(
            id="inst-north",
            name="Northfield University",
            tenant_id="tenant-north",
            purview_account_name="pv-north",
            fabric_workspace_id="ws-north-shared",
            primary_contact_email="data-office@northfield.example",
        ),
        DemoInstitution(
            id="inst-lake",
            name="Lakeside College",
            tenant_id="tenant-lake",
            purview_account_name=None,
            fabric_workspace_id=None,
            primary_contact_email="research@lakeside.example",
        ),
    )


def build_demo_products() -> tuple[DemoProduct, ...]:
    return (
        DemoProduct(
            id="dp-enrollment",
            institution_id="inst-north",
            qualified_name="northfield/enrollment-trends",
            name="Enrollment Trends",
            description="Term-level enrollment counts by program.",
            source_lakehouse_id="lh-north-enrollment",
        ),
        DemoProduct(
            id="dp-retention",
            institution_id="inst-north",
            qualified_name="northfield/retention",
            name="Student Retention",
            description="First-year retention cohorts.",
            # Left unset to demonstrate the missing-source fulfillment error.
            source_lakehouse_id=None,
        ),
    )


async def seed_demo() -> int:
    async with SessionLocal() as session:
        for demo in build_demo_institutions():
            institution = await session.get(Institution, demo.id)
            if institution is None:
                institution = Institution(id=demo.id)
                session.add(institution)
            institution.name = demo.name
            institution.tenant_id = demo.tenant_id
            institution.purview_account_name = demo.purview_account_name
            institution.fabric_workspace_id = demo.fabric_workspace_id
            institution.primary_contact_email = demo.primary_contact_email
            institution.is_active = True
            institution.admin_consent_granted = True
        await session.flush()

        added = 0
        for demo in build_demo_products():
            product = await session.get(DataProduct, demo.id)
            if product is None:
                product = DataProduct(id=demo.id, institution_id=demo.institution_id)
                session.add(product)
                added += 1
            product.qualified_name = demo.qualified_name
            product.name = demo.name
            product.description = demo.description
            product.source_lakehouse_id = demo.source_lakehouse_id
            product.is_listed = True
            product.asset_count = 0
            product.endorsed = False
        await session.commit()
        print(f"Seeded {len(build_demo_institutions())} institutions and {added} new data products.")
        return 0


def main() -> int:
    # Exit non-zero so dev scripts can detect setup failures.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
