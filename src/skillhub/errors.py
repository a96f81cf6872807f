from __future__ import annotations

from pathlib import Path


class SkillHubError(RuntimeError):
    """
    Base error for every failure raised by skillhub.

    The optional context attributes are surfaced verbatim by front-ends.
    """

    def __init__(
        self,
        message: str,
        *,
        path: str | Path | None = None,
        skill_id: str | None = None,
        product_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None
        self.skill_id = skill_id
        self.product_id = product_id


class ValidationError(SkillHubError):
    pass


class InvalidManifestError(ValidationError):
    pass


class UnsupportedInstallModeError(ValidationError):
    pass


class AdapterNotFoundError(ValidationError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Adapter not found for product: {product_id}", product_id=product_id)


class SkillNotFoundError(ValidationError):
    def __init__(self, skill_id: str) -> None:
        super().__init__(f"Skill not found: {skill_id}", skill_id=skill_id)


class FilesystemError(SkillHubError):
    pass


class SkillNotStagedError(FilesystemError):
    pass


class AdapterError(SkillHubError):
    pass


class ProductNotDetectedError(AdapterError):
    pass


class OperationNotImplementedError(AdapterError):
    pass


class StateError(SkillHubError):
    pass


class StateCorruptedError(StateError):
    pass


class StateLockError(StateError):
    pass


class GitInspectionError(SkillHubError):
    pass
