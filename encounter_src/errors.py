"""Error taxonomy for encounter orchestration.

Every error carries enough context for the caller to act on it without a
second lookup: the conflicting encounter, the occupant of a resource, or the
offending fields.
"""

from typing import Any


class ClinicError(Exception):
    """Base class for all encounter orchestration errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message}


class ValidationError(ClinicError):
    """Input failed validation. `errors` maps field name to a reason."""

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.errors = errors or {}

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class InvalidVitals(ValidationError):
    """One or more vital sign values are implausible or malformed."""


class ConflictError(ClinicError):
    """The operation conflicts with the current state of the clinic."""


class DuplicateActiveEncounter(ConflictError):
    """The patient already has an active encounter today."""

    def __init__(self, encounter_id: str, patient_id: str | None = None):
        super().__init__(
            f"Patient {patient_id} already has active encounter {encounter_id} today"
        )
        self.encounter_id = encounter_id
        self.patient_id = patient_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["encounter_id"] = self.encounter_id
        data["patient_id"] = self.patient_id
        return data


class ResourceOccupied(ConflictError):
    """The resource is already bound to another encounter."""

    def __init__(
        self,
        resource_id: str,
        occupant_encounter_id: str | None,
        occupant_patient_id: str | None,
    ):
        super().__init__(
            f"Resource {resource_id} is occupied by encounter {occupant_encounter_id}"
        )
        self.resource_id = resource_id
        self.occupant_encounter_id = occupant_encounter_id
        self.occupant_patient_id = occupant_patient_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "resource_id": self.resource_id,
            "occupant_encounter_id": self.occupant_encounter_id,
            "occupant_patient_id": self.occupant_patient_id,
        })
        return data


class InvalidTransition(ConflictError):
    """A status change not allowed from the current status."""

    def __init__(self, entity: str, entity_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current} to {requested}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "entity": self.entity,
            "entity_id": self.entity_id,
            "current": self.current,
            "requested": self.requested,
        })
        return data


class NotFoundError(ClinicError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["entity"] = self.entity
        data["entity_id"] = self.entity_id
        return data


class DependencyError(ClinicError):
    """The primary store or another required dependency is unavailable."""
