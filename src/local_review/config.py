"""Settings consumed by the store and coordinator."""

from pydantic import BaseModel, field_validator

from local_review.paths import DEFAULT_STORAGE_PATH, normalize_storage_path

STORAGE_PATH_ENVVAR = "LOCAL_REVIEW_STORAGE_PATH"
ONLY_CHANGES_ENVVAR = "LOCAL_REVIEW_ONLY_CHANGES"


class ReviewSettings(BaseModel):
    """
    Per-project review settings.

    Attributes:
        storage_path: Store root relative to the project root. Unsafe or
            empty values fall back to `.code-review`.
        only_comment_on_changes: Restrict new comments to lines changed
            against HEAD
    """

    storage_path: str = DEFAULT_STORAGE_PATH
    only_comment_on_changes: bool = False

    @field_validator("storage_path", mode="before")
    @classmethod
    def validate_storage_path(cls, v: object) -> str:
        return normalize_storage_path(v)
