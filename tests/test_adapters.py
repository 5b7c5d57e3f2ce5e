"""Tests for the domain adapters."""

import pytest

from story_graph.adapters import ADAPTERS, adapt, dedupe_relationships
from story_graph.adapters.domain import (
    book_relationships,
    chapter_relationships,
    character_to_entity,
    series_relationships,
    story_relationships,
    story_to_entity,
)
from story_graph.models.entities import EntityType
from story_graph.models.relationships import RelationshipType


@pytest.fixture
def story():
    return {
        "id": "s1",
        "title": "The Rift",
        "description": "A crack opens in the sky.",
        "genre": "fantasy",
        "tags": ["portal"],
        "characters": ["c1", "c2"],
        "chapters": [
            {"id": "ch1", "title": "The Crack", "order": 1, "wordCount": 2400},
            {"id": "ch2", "title": "Falling", "order": 2},
            {"id": "ch3"},  # no title
        ],
    }


class TestDispatch:
    def test_all_domain_types_registered(self):
        assert set(ADAPTERS) == {"story", "chapter", "character", "series", "book"}

    def test_unknown_domain_type(self):
        out = adapt({"id": "x"}, "spaceship")
        assert not out.ok
        assert "spaceship" in out.errors[0]

    def test_invalid_record_reports_errors(self):
        out = adapt({"id": "s1"}, "story")
        assert out.entity is None
        assert out.relationships == []
        assert any("title" in err for err in out.errors)


class TestStoryAdapter:
    def test_story_entity(self, story):
        entity = story_to_entity(story)

        assert entity.id == "s1"
        assert entity.name == "The Rift"
        assert entity.type == EntityType.STORY
        assert entity.tags == {"portal"}
        assert entity.metadata["genre"] == "fantasy"
        assert entity.metadata["character_count"] == 2

    def test_missing_title_is_absent(self):
        assert story_to_entity({"id": "s1", "title": ""}) is None

    def test_story_relationships(self, story):
        edges = story_relationships(story, {"c1": "Kara"})
        part_of = [e for e in edges if e.relationship_type == RelationshipType.PART_OF]
        participates = [e for e in edges if e.relationship_type == RelationshipType.PARTICIPATES]

        # The untitled chapter is skipped
        assert [(e.from_entity.id, e.to_entity.id) for e in part_of] == [("ch1", "s1"), ("ch2", "s1")]
        assert [(e.from_entity.id, e.to_entity.id) for e in participates] == [("c1", "s1"), ("c2", "s1")]
        assert participates[0].from_entity.name == "Kara"
        assert all(not e.bidirectional for e in edges)

    def test_adapter_is_idempotent(self, story):
        first = adapt(story, "story")
        second = adapt(story, "story")

        assert first.entity.id == second.entity.id
        assert [e.key for e in first.relationships] == [e.key for e in second.relationships]
        assert [e.id for e in first.relationships] == [e.id for e in second.relationships]

    def test_main_and_supporting_characters(self):
        edges = story_relationships(
            {"id": "s1", "title": "T", "characters": ["c1"], "mainCharacter": "c1", "supportingCharacters": ["c3"]}
        )
        assert [e.from_entity.id for e in edges] == ["c1", "c3"]


class TestOtherAdapters:
    def test_chapter_belongs_to_story(self):
        edges = chapter_relationships({"id": "ch1", "storyId": "s1", "title": "Start"})
        assert len(edges) == 1
        assert edges[0].key == ("ch1", "s1", "part_of")

    def test_chapter_without_story_has_no_edges(self):
        assert chapter_relationships({"id": "ch1", "title": "Start"}) == []

    def test_character_accepts_camel_case_and_class_alias(self):
        entity = character_to_entity({"id": "c1", "name": "Kara", "class": "Mage", "race": "Human", "level": 5})

        assert entity.type == EntityType.CHARACTER
        assert entity.metadata["class"] == "Mage"
        assert entity.metadata["level"] == 5

    def test_character_story_ids(self):
        out = adapt({"id": "c1", "name": "Kara", "storyIds": ["s1"]}, "character")
        assert [e.key for e in out.relationships] == [("c1", "s1", "participates")]

    def test_character_without_name_is_absent(self):
        assert character_to_entity({"id": "c1"}) is None

    def test_extra_fields_go_to_metadata(self):
        entity = character_to_entity({"id": "c1", "name": "Kara", "alignment": "chaotic good"})
        assert entity.metadata["alignment"] == "chaotic good"

    def test_series_is_parent_of_book_stories(self):
        series = {
            "id": "sr1",
            "name": "Rift Cycle",
            "books": [
                {"id": "b1", "title": "The Rift", "bookNumber": 1, "storyId": "s1"},
                {"id": "b2", "title": "Untitled", "bookNumber": 2},
            ],
        }
        edges = series_relationships(series)
        assert [e.key for e in edges] == [("sr1", "s1", "parent_of")]

        out = adapt(series, "series")
        assert out.entity.metadata["book_count"] == 2
        assert out.entity.metadata["story_ids"] == ["s1"]

    def test_book_relationships(self):
        edges = book_relationships({"id": "b1", "seriesId": "sr1", "storyId": "s1", "title": "The Rift"})
        assert [e.key for e in edges] == [("b1", "sr1", "part_of"), ("b1", "s1", "references")]


class TestDedupe:
    def test_keeps_first_edge_per_key(self, story):
        story_edges = story_relationships(story)
        chapter_edges = chapter_relationships({"id": "ch1", "storyId": "s1", "title": "The Crack"})

        combined = dedupe_relationships(story_edges + chapter_edges + story_edges)
        assert len(combined) == len(story_edges)
        assert combined[0] is story_edges[0]
