from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

UpdateMode = Literal["replace", "append", "prepend"]


class CreatePageInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    space_key: str
    title: str
    body: str
    parent_id: Optional[str] = None
    is_markdown: bool = False

    @field_validator("space_key", "title")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class UpdatePageInput(BaseModel):
    """Arguments of a page update.

    ``update_mode`` decides how ``body`` meets the existing page body:
    ``replace`` swaps it, ``append`` and ``prepend`` join the two with a newline.
    """

    model_config = ConfigDict(extra="forbid")

    page_id: str
    title: str
    body: str
    is_markdown: bool = False
    update_mode: UpdateMode = "replace"
    version_comment: Optional[str] = None
    is_minor_edit: Optional[bool] = None

    @field_validator("page_id", "title")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value
