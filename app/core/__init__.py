"""
Core Application - Shared Base Classes

Building blocks used by commerce and reconciliation. No payment logic
lives here.

Models (import from core.models):
    - BaseModel: Abstract model with created_at / updated_at

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID primary key
    - MetadataMixin: Merge-only JSON metadata

Services (import from core.services):
    - BaseService: Service base class with a class-named logger
    - ServiceResult: Expected success/failure wrapper

Exceptions (import from core.exceptions):
    - BaseApplicationError: Message, error code and details
    - ConflictError: State conflicts (locks, transitions)
"""
