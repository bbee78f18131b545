from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


# Outbound event type names; endpoints subscribe by these strings.
INGESTION_COMPLETED = "ingestion.completed"
INGESTION_FAILED = "ingestion.failed"
CERTIFICATE_UPDATED = "certificate.updated"
ACTION_CREATED = "action.created"

EVENT_TYPES = (INGESTION_COMPLETED, INGESTION_FAILED, CERTIFICATE_UPDATED, ACTION_CREATED)
# Synthetic type for operator-triggered test sends; endpoints cannot subscribe to it.
WEBHOOK_TEST = "webhook.test"


@dataclass(frozen=True)
class IngestionCompleted:
    tenant_id: str
    job_id: str
    property_id: str
    certificate_type: str
    certificate_id: str
    callback_url: str | None = None
    event_type: str = field(default=INGESTION_COMPLETED, init=False)
    entity_type: str = field(default="ingestion_job", init=False)

    @property
    def entity_id(self) -> str:
        return self.job_id

    def payload(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": "COMPLETE",
            "propertyId": self.property_id,
            "certificateType": self.certificate_type,
            "certificateId": self.certificate_id,
        }


@dataclass(frozen=True)
class IngestionFailed:
    tenant_id: str
    job_id: str
    property_id: str
    certificate_type: str
    certificate_id: str | None
    error_code: str
    error_message: str
    callback_url: str | None = None
    event_type: str = field(default=INGESTION_FAILED, init=False)
    entity_type: str = field(default="ingestion_job", init=False)

    @property
    def entity_id(self) -> str:
        return self.job_id

    def payload(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": "FAILED",
            "propertyId": self.property_id,
            "certificateType": self.certificate_type,
            "certificateId": self.certificate_id,
            "error": {"code": self.error_code, "message": self.error_message},
        }


@dataclass(frozen=True)
class CertificateUpdated:
    tenant_id: str
    certificate_id: str
    property_id: str
    certificate_type: str
    status: str
    event_type: str = field(default=CERTIFICATE_UPDATED, init=False)
    entity_type: str = field(default="certificate", init=False)

    @property
    def entity_id(self) -> str:
        return self.certificate_id

    @property
    def callback_url(self) -> str | None:
        return None

    def payload(self) -> dict[str, Any]:
        return {
            "certificateId": self.certificate_id,
            "propertyId": self.property_id,
            "certificateType": self.certificate_type,
            "status": self.status,
        }


@dataclass(frozen=True)
class RemedialActionCreated:
    tenant_id: str
    action_id: str
    certificate_id: str
    property_id: str
    code: str
    severity: str
    description: str
    event_type: str = field(default=ACTION_CREATED, init=False)
    entity_type: str = field(default="remedial_action", init=False)

    @property
    def entity_id(self) -> str:
        return self.action_id

    @property
    def callback_url(self) -> str | None:
        return None

    def payload(self) -> dict[str, Any]:
        return {
            "actionId": self.action_id,
            "certificateId": self.certificate_id,
            "propertyId": self.property_id,
            "code": self.code,
            "severity": self.severity,
            "description": self.description,
        }


DomainEvent = Union[IngestionCompleted, IngestionFailed, CertificateUpdated, RemedialActionCreated]
