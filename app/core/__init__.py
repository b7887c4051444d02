"""
Core Application - Infrastructure & Base Classes

Generic building blocks shared by domain apps. No settlement logic lives here.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key
    - VersionedMixin: Optimistic locking version counter

Services (import from core.services):
    - BaseService: Base class for service layer
    - ServiceResult: Standard result wrapper for success/failure handling

Exceptions (import from core.exceptions):
    - BaseApplicationError: Base exception with error codes
    - ValidationError: Rejected input or business rule
    - NotFoundError: Resource not found
    - ConflictError: State conflicts (duplicates, lost races)
    - ExternalServiceError: Third-party service failures

Note:
    Business logic should NOT go here. Extend core classes in your domain apps.
"""
