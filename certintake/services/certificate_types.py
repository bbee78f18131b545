from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.domain.models import CertificateType


@dataclass(frozen=True)
class CertificateTypeSeed:
    code: str
    name: str
    short_name: str
    compliance_stream: str
    validity_months: int | None
    description: str | None = None


# Baseline catalogue for UK social-housing compliance streams.
DEFAULT_CERTIFICATE_TYPES: tuple[CertificateTypeSeed, ...] = (
    CertificateTypeSeed("GAS_SAFETY", "Gas Safety Certificate (CP12)", "Gas Safety", "GAS_HEATING", 12),
    CertificateTypeSeed("EICR", "Electrical Installation Condition Report", "EICR", "ELECTRICAL", 60),
    CertificateTypeSeed("EPC", "Energy Performance Certificate", "EPC", "ENERGY", 120),
    CertificateTypeSeed("FIRE_RISK_ASSESSMENT", "Fire Risk Assessment", "FRA", "FIRE_SAFETY", 12),
    CertificateTypeSeed("LEGIONELLA_ASSESSMENT", "Legionella Risk Assessment", "Legionella", "WATER_SAFETY", 24),
    CertificateTypeSeed("ASBESTOS_SURVEY", "Asbestos Management Survey", "Asbestos", "ASBESTOS", 12),
    CertificateTypeSeed("LIFT_LOLER", "LOLER Thorough Examination", "LOLER", "LIFT_EQUIPMENT", 6),
    CertificateTypeSeed(
        "OIL_SAFETY",
        "Oil Fired Appliance Inspection",
        "Oil",
        "GAS_HEATING",
        12,
        "OFTEC inspection for oil fired boilers and tanks.",
    ),
)


async def seed_certificate_types(
    session: AsyncSession,
    seeds: tuple[CertificateTypeSeed, ...] = DEFAULT_CERTIFICATE_TYPES,
) -> int:
    """Insert missing catalogue rows and return how many were created.

    Existing rows keep their ``is_active`` flag so operators can disable a
    type without the next seed run re-enabling it.
    """
    result = await session.execute(select(CertificateType))
    existing = {row.code: row for row in result.scalars().all()}
    created = 0
    for order, seed in enumerate(seeds):
        row = existing.get(seed.code)
        if row is None:
            session.add(
                CertificateType(
                    code=seed.code,
                    name=seed.name,
                    short_name=seed.short_name,
                    compliance_stream=seed.compliance_stream,
                    description=seed.description,
                    validity_months=seed.validity_months,
                    is_active=True,
                    display_order=order,
                )
            )
            created += 1
            continue
        row.name = seed.name
        row.short_name = seed.short_name
        row.compliance_stream = seed.compliance_stream
        row.validity_months = seed.validity_months
        row.display_order = order
    await session.commit()
    return created
