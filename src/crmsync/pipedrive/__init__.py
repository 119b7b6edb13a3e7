"""Pipedrive integration layer -- typed client, payload normalization, custom fields.

Provides:
- PipedriveClient: request() with classified outcomes and bounded retries
- ApiResult / ApiError / ApiErrorKind: typed call outcomes
- CustomFieldTranslator: fuzzy field discovery and option-id translation
- Sanitizer: outbound free-text cleanup and truncation
"""

from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.errors import ApiError, ApiErrorKind, ApiResult, Diagnostics
from src.crmsync.pipedrive.fields import CustomFieldTranslator, EntityKind
from src.crmsync.pipedrive.sanitize import Sanitizer

__all__ = [
    "PipedriveClient",
    "ApiError",
    "ApiErrorKind",
    "ApiResult",
    "Diagnostics",
    "CustomFieldTranslator",
    "EntityKind",
    "Sanitizer",
]
