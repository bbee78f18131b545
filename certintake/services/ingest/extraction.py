from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import hashlib
from typing import Any, Protocol

from certintake.core.config import get_settings
from certintake.core.errors import ExtractionError


@dataclass(frozen=True)
class ExtractionRequest:
    object_path: str
    file_name: str
    certificate_type: str
    property_id: str


@dataclass(frozen=True)
class RemedialFinding:
    code: str
    description: str
    severity: str


@dataclass(frozen=True)
class ExtractionResult:
    data: dict[str, Any]
    findings: list[RemedialFinding] = field(default_factory=list)


class Extractor(Protocol):
    async def extract(self, request: ExtractionRequest) -> ExtractionResult: ...


class StubExtractor:
    """Deterministic extractor for local runs and tests.

    File names containing "corrupt" fail; names containing "defect" yield one
    remedial finding. Everything else extracts a fixed record.
    """

    def __init__(self, *, delay_s: float = 0.0) -> None:
        self._delay_s = delay_s

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        if self._delay_s > 0:
            await asyncio.sleep(self._delay_s)
        lowered = request.file_name.lower()
        if "corrupt" in lowered:
            raise ExtractionError(
                "Document could not be read",
                details={"file_name": request.file_name},
            )
        digest = hashlib.sha256(request.object_path.encode("utf-8")).hexdigest()[:16]
        findings: list[RemedialFinding] = []
        if "defect" in lowered:
            findings.append(
                RemedialFinding(
                    code="C2",
                    description="Potentially dangerous condition recorded on certificate",
                    severity="URGENT",
                )
            )
        return ExtractionResult(
            data={
                "certificateType": request.certificate_type,
                "propertyId": request.property_id,
                "documentDigest": digest,
                "outcome": "UNSATISFACTORY" if findings else "SATISFACTORY",
            },
            findings=findings,
        )


_extractor: Extractor | None = None


def get_extractor() -> Extractor:
    global _extractor
    if _extractor is None:
        provider = get_settings().extractor_provider.lower()
        if provider != "stub":
            raise ValueError(f"Unsupported extractor provider: {provider}")
        _extractor = StubExtractor()
    return _extractor


def set_extractor(extractor: Extractor | None) -> None:
    global _extractor
    _extractor = extractor
