"""Shapes of the domain records handed over by the host application.

The host stores speak camelCase JSON; both camelCase and snake_case keys
are accepted. Unknown keys are kept so adapters can copy them into
entity metadata.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DomainRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    description: Optional[str] = ""
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ChapterRecord(DomainRecord):
    story_id: Optional[str] = None
    title: str = Field(min_length=1)
    order: int = 0
    word_count: int = 0
    status: str | None = None


class StoryRecord(DomainRecord):
    title: str = Field(min_length=1)
    genre: str | None = None
    status: str | None = None
    # Nested records stay raw so one malformed child does not sink its parent
    chapters: list[Any] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)  # character ids
    main_character: str | None = None
    supporting_characters: list[str] = Field(default_factory=list)

    @property
    def character_ids(self) -> list[str]:
        ids = list(self.characters)
        if self.main_character:
            ids.append(self.main_character)
        ids.extend(self.supporting_characters)
        return list(dict.fromkeys(ids))


class CharacterRecord(DomainRecord):
    name: str = Field(min_length=1)
    character_class: str | None = Field(default=None, alias="class")
    race: str | None = None
    level: int = 1
    story_ids: list[str] = Field(default_factory=list)


class BookRecord(DomainRecord):
    series_id: Optional[str] = None
    story_id: Optional[str] = None
    book_number: int = 0
    title: str = Field(min_length=1)


class SeriesRecord(DomainRecord):
    name: str = Field(min_length=1)
    genre: str | None = None
    status: str | None = None
    books: list[Any] = Field(default_factory=list)
