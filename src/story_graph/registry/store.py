"""In-memory entity graph with indexed lookup and relevance search.

Entities and relationships live in flat arenas keyed by id. Secondary
indexes (type, tag, lowercase name, adjacency) are kept in sync on every
mutation so lookups never scan the arena.

Usage:
    registry = EntityRegistry()
    registry.add_entity(BaseEntity(id="c1", name="Kara", type=EntityType.CHARACTER))
    registry.add_relationship(EntityRelationship(...))
    results = registry.search_entities(SearchOptions(query="kara"))
"""

from collections import defaultdict
from datetime import timedelta
from typing import Iterable, Optional

import networkx as nx
from loguru import logger
from rapidfuzz import fuzz

from story_graph.config import get_settings
from story_graph.models.entities import BaseEntity, EntityType, utcnow
from story_graph.models.relationships import EntityRelationship, RelationshipType
from story_graph.registry.search import (
    CrossReference,
    EntityFilter,
    EntitySort,
    MatchTier,
    ReferenceSite,
    SearchOptions,
    SearchResult,
)

log = logger.bind(component="registry")


class EntityRegistry:
    """Owns the generic entity graph. Knows nothing about domain semantics."""

    def __init__(self, fuzzy_threshold: int | None = None):
        if fuzzy_threshold is None:
            fuzzy_threshold = get_settings().fuzzy_threshold
        self.fuzzy_threshold = fuzzy_threshold

        # Arenas (dict order is creation order)
        self._entities: dict[str, BaseEntity] = {}
        self._relationships: dict[str, EntityRelationship] = {}
        self._edge_ids: dict[tuple[str, str, str], str] = {}

        # Indexes
        self._by_type: dict[EntityType, set[str]] = defaultdict(set)
        self._by_tag: dict[str, set[str]] = defaultdict(set)
        self._by_name: dict[str, set[str]] = defaultdict(set)
        self._adjacency: dict[str, list[str]] = defaultdict(list)

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def add_entity(self, entity: BaseEntity) -> BaseEntity:
        """Insert or overwrite by id. Always succeeds.

        Overwriting keeps the original creation position and ``created_at``;
        ``updated_at`` moves strictly forward.
        """
        existing = self._entities.get(entity.id)
        now = utcnow()
        if existing is not None:
            if now <= existing.updated_at:
                now = existing.updated_at + timedelta(microseconds=1)
            stored = entity.model_copy(
                update={"created_at": existing.created_at, "updated_at": now}, deep=True
            )
            self._unindex(existing)
        else:
            stored = entity.model_copy(update={"updated_at": now}, deep=True)

        self._entities[stored.id] = stored
        self._index(stored)
        return stored

    def add_entities(self, entities: Iterable[BaseEntity]) -> int:
        count = 0
        for entity in entities:
            self.add_entity(entity)
            count += 1
        return count

    def update_entity(self, entity_id: str, **changes) -> Optional[BaseEntity]:
        """Apply field changes to a stored entity. Returns None if absent."""
        existing = self._entities.get(entity_id)
        if existing is None:
            return None
        changes.pop("id", None)
        return self.add_entity(existing.model_copy(update=changes))

    def remove_entity(self, entity_id: str) -> bool:
        """Remove an entity and every edge touching it."""
        existing = self._entities.pop(entity_id, None)
        if existing is None:
            return False
        self._unindex(existing)
        for rel_id in list(self._adjacency.get(entity_id, [])):
            self.remove_relationship(rel_id)
        self._adjacency.pop(entity_id, None)
        return True

    def get_entity(self, entity_id: str) -> Optional[BaseEntity]:
        return self._entities.get(entity_id)

    def get_entities_by_type(self, entity_type: EntityType) -> list[BaseEntity]:
        ids = self._by_type.get(entity_type, set())
        return [e for e in self._entities.values() if e.id in ids]

    def get_entities_by_tag(self, tag: str) -> list[BaseEntity]:
        ids = self._by_tag.get(tag.lower(), set())
        return [e for e in self._entities.values() if e.id in ids]

    def get_entities_by_name(self, name: str) -> list[BaseEntity]:
        """Exact, case-insensitive name lookup."""
        ids = self._by_name.get(name.strip().lower(), set())
        return [e for e in self._entities.values() if e.id in ids]

    def all_entities(self) -> list[BaseEntity]:
        return list(self._entities.values())

    def _index(self, entity: BaseEntity) -> None:
        self._by_type[entity.type].add(entity.id)
        self._by_name[entity.name.strip().lower()].add(entity.id)
        for tag in entity.tags:
            self._by_tag[tag.lower()].add(entity.id)

    def _unindex(self, entity: BaseEntity) -> None:
        self._by_type[entity.type].discard(entity.id)
        self._by_name[entity.name.strip().lower()].discard(entity.id)
        for tag in entity.tags:
            self._by_tag[tag.lower()].discard(entity.id)

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def add_relationship(self, relationship: EntityRelationship) -> EntityRelationship:
        """Store one edge, upserting on (from id, to id, type).

        A bidirectional edge is still a single record; the reverse is
        synthesized by the traversal queries.
        """
        existing_id = self._edge_ids.get(relationship.key)
        if existing_id is not None:
            stored = relationship.model_copy(update={"id": existing_id})
            self._relationships[existing_id] = stored
            return stored

        if relationship.id in self._relationships:
            # Same id, different key: the old edge is being rewired
            self.remove_relationship(relationship.id)

        self._relationships[relationship.id] = relationship
        self._edge_ids[relationship.key] = relationship.id
        self._adjacency[relationship.from_entity.id].append(relationship.id)
        if relationship.to_entity.id != relationship.from_entity.id:
            self._adjacency[relationship.to_entity.id].append(relationship.id)
        return relationship

    def remove_relationship(self, relationship_id: str) -> bool:
        rel = self._relationships.pop(relationship_id, None)
        if rel is None:
            return False
        self._edge_ids.pop(rel.key, None)
        for end in (rel.from_entity.id, rel.to_entity.id):
            ids = self._adjacency.get(end)
            if ids and relationship_id in ids:
                ids.remove(relationship_id)
        return True

    def get_relationship(self, relationship_id: str) -> Optional[EntityRelationship]:
        return self._relationships.get(relationship_id)

    def all_relationships(self) -> list[EntityRelationship]:
        return list(self._relationships.values())

    def get_relationships_for_entity(self, entity_id: str) -> list[EntityRelationship]:
        """Every stored edge touching the entity, in either direction."""
        return [self._relationships[rid] for rid in self._adjacency.get(entity_id, [])]

    def get_outgoing_relationships(self, entity_id: str) -> list[EntityRelationship]:
        """Edges traversable from the entity.

        Includes synthesized reversals of bidirectional edges that end here.
        """
        outgoing = []
        for rel in self.get_relationships_for_entity(entity_id):
            if rel.from_entity.id == entity_id:
                outgoing.append(rel)
            elif rel.bidirectional:
                outgoing.append(rel.reversed())
        return outgoing

    def get_relationships_between(self, a: str, b: str) -> list[EntityRelationship]:
        return [r for r in self.get_relationships_for_entity(a) if r.other_end(a).id == b]

    def get_related_entities(
        self,
        entity_id: str,
        relationship_types: Optional[list[RelationshipType]] = None,
    ) -> list[BaseEntity]:
        """Registered entities at the other end of any edge touching ``entity_id``."""
        related: dict[str, BaseEntity] = {}
        for rel in self.get_relationships_for_entity(entity_id):
            if relationship_types and rel.relationship_type not in relationship_types:
                continue
            other = self._entities.get(rel.other_end(entity_id).id)
            if other is not None and other.id != entity_id:
                related.setdefault(other.id, other)
        return list(related.values())

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_entities(self, options: SearchOptions | None = None) -> list[SearchResult]:
        """Relevance-ranked text search combined with structural filters.

        Ranking: exact name > name substring > tag > fuzzy name >
        description/metadata. Ties go to the most recently updated entity,
        then to creation order. An empty query with no filter returns every
        entity in creation order.
        """
        options = options or SearchOptions()
        query = options.query.strip().lower()
        positions = {eid: i for i, eid in enumerate(self._entities)}
        flt = options.filter if options.filter and not options.filter.is_empty() else None

        results = []
        for entity in self._entities.values():
            if flt and not self._passes_filter(entity, flt):
                continue
            tier, score, fields = self._match(entity, query)
            if query and tier is MatchTier.NONE:
                continue
            result = SearchResult(entity=entity, tier=tier, score=score, matched_fields=fields)
            if options.include_relationships:
                result.relationships = self.get_relationships_for_entity(entity.id)
            results.append(result)

        sort_by = options.sort_by or (EntitySort.RELEVANCE if query else EntitySort.CREATED)
        if sort_by is EntitySort.RELEVANCE:
            results.sort(
                key=lambda r: (
                    -r.tier,
                    -r.entity.updated_at.timestamp(),
                    positions[r.entity.id],
                )
            )
            if options.descending:
                results.reverse()
        else:
            sort_keys = {
                EntitySort.CREATED: lambda r: positions[r.entity.id],
                EntitySort.NAME: lambda r: (r.entity.name.lower(), positions[r.entity.id]),
                EntitySort.CREATED_AT: lambda r: (r.entity.created_at, positions[r.entity.id]),
                EntitySort.UPDATED_AT: lambda r: (r.entity.updated_at, positions[r.entity.id]),
            }
            results.sort(key=sort_keys[sort_by], reverse=options.descending)

        if options.limit is not None:
            results = results[: max(options.limit, 0)]
        return results

    def _match(self, entity: BaseEntity, query: str) -> tuple[MatchTier, float, list[str]]:
        if not query:
            return MatchTier.NONE, 0.0, []

        name = entity.name.strip().lower()
        fields = []
        tier = MatchTier.NONE
        score = 0.0

        if name == query:
            tier, score = MatchTier.EXACT_NAME, 100.0
            fields.append("name")
        elif query in name:
            tier = MatchTier.NAME_SUBSTRING
            # Shorter names containing the query are closer matches
            score = 100.0 * len(query) / len(name)
            fields.append("name")

        if any(query in tag.lower() for tag in entity.tags):
            fields.append("tags")
            if tier < MatchTier.TAG:
                tier, score = MatchTier.TAG, 0.0

        if tier < MatchTier.FUZZY_NAME:
            ratio = fuzz.ratio(query, name)
            if ratio >= self.fuzzy_threshold:
                tier, score = MatchTier.FUZZY_NAME, ratio
                fields.append("name")

        haystack = " ".join(
            [entity.description.lower()] + [str(v).lower() for v in entity.metadata.values()]
        )
        if query in haystack:
            fields.append("description")
            if tier < MatchTier.DESCRIPTION:
                tier = MatchTier.DESCRIPTION

        return tier, score, fields

    def _passes_filter(self, entity: BaseEntity, flt: EntityFilter) -> bool:
        if flt.types and entity.type not in flt.types:
            return False
        if flt.tags:
            wanted = {t.lower() for t in flt.tags}
            if not wanted & {t.lower() for t in entity.tags}:
                return False
        if flt.created_after and entity.created_at < flt.created_after:
            return False
        if flt.created_before and entity.created_at > flt.created_before:
            return False
        if flt.has_relationship_with or flt.relationship_types:
            edges = self.get_relationships_for_entity(entity.id)
            if flt.has_relationship_with:
                edges = [e for e in edges if e.other_end(entity.id).id == flt.has_relationship_with]
            if flt.relationship_types:
                edges = [e for e in edges if e.relationship_type in flt.relationship_types]
            if not edges:
                return False
        if flt.custom_filter and not flt.custom_filter(entity):
            return False
        return True

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def find_similar_entities(self, entity_id: str, limit: int = 5) -> list[BaseEntity]:
        """Entities sharing type, tags or a similar name with ``entity_id``."""
        target = self._entities.get(entity_id)
        if target is None:
            return []

        scored = []
        for i, entity in enumerate(self._entities.values()):
            if entity.id == entity_id:
                continue
            score = 0.0
            if entity.type == target.type:
                score += 5
            score += 2 * len(entity.tags & target.tags)
            if fuzz.token_set_ratio(entity.name.lower(), target.name.lower()) >= self.fuzzy_threshold:
                score += 3
            if score > 0:
                scored.append((score, i, entity))

        scored.sort(key=lambda item: (-item[0], item[1]))
        return [entity for _, _, entity in scored[:limit]]

    def find_orphaned_entities(self) -> list[BaseEntity]:
        """Entities with no edges at all."""
        return [e for e in self._entities.values() if not self._adjacency.get(e.id)]

    def find_duplicate_entities(self) -> list[list[BaseEntity]]:
        """Groups of entities sharing a type and a case-insensitive name."""
        groups: dict[tuple[EntityType, str], list[BaseEntity]] = defaultdict(list)
        for entity in self._entities.values():
            groups[(entity.type, entity.name.strip().lower())].append(entity)
        return [group for group in groups.values() if len(group) > 1]

    def find_dangling_relationships(self) -> list[EntityRelationship]:
        """Edges with at least one endpoint missing from the registry."""
        return [
            r
            for r in self._relationships.values()
            if r.from_entity.id not in self._entities or r.to_entity.id not in self._entities
        ]

    def get_cross_references(self, entity_id: str) -> CrossReference:
        """Every place another entity points at ``entity_id``.

        Covers edges arriving at it (bidirectional edges count from both ends)
        and metadata values on other entities that hold its id.
        """
        refs = CrossReference(entity_id=entity_id)
        for rel in self._relationships.values():
            context = f"{rel.relationship_type.value} relationship"
            if rel.to_entity.id == entity_id:
                refs.referenced_in.append(ReferenceSite(rel.from_entity.id, context, "relationship"))
            elif rel.bidirectional and rel.from_entity.id == entity_id:
                refs.referenced_in.append(ReferenceSite(rel.to_entity.id, context, "relationship"))

        for entity in self._entities.values():
            if entity.id == entity_id:
                continue
            for key, value in entity.metadata.items():
                values = value if isinstance(value, (list, tuple, set)) else [value]
                if entity_id in values:
                    refs.referenced_in.append(ReferenceSite(entity.id, f"metadata '{key}'", key))
        return refs

    def validate_entity(self, entity_id: str) -> bool:
        """A stored entity is valid when its name is not blank."""
        entity = self._entities.get(entity_id)
        return entity is not None and bool(entity.name.strip())

    def validate_all_entities(self) -> tuple[list[BaseEntity], list[BaseEntity]]:
        """Split the registry into (valid, invalid) entities."""
        valid, invalid = [], []
        for entity in self._entities.values():
            (valid if self.validate_entity(entity.id) else invalid).append(entity)
        return valid, invalid

    def merge_entities(self, source_id: str, target_id: str) -> Optional[BaseEntity]:
        """Fold ``source`` into ``target``.

        Tags are unioned, metadata merged with the target winning, and every
        edge of the source is re-pointed at the target. The source is removed.
        """
        source = self._entities.get(source_id)
        target = self._entities.get(target_id)
        if source is None or target is None or source_id == target_id:
            return None

        merged = self.update_entity(
            target_id,
            tags=target.tags | source.tags,
            metadata={**source.metadata, **target.metadata},
            description=target.description or source.description,
        )
        target_ref = merged.reference()

        repointed = []
        for rel in self.get_relationships_for_entity(source_id):
            update = {"id": ""}
            if rel.from_entity.id == source_id:
                update["from_entity"] = target_ref
            if rel.to_entity.id == source_id:
                update["to_entity"] = target_ref
            repointed.append(rel.model_copy(update=update))

        self.remove_entity(source_id)
        for rel in repointed:
            if rel.from_entity.id == rel.to_entity.id:
                continue
            # Re-derive the key-based id for the rewired edge
            self.add_relationship(EntityRelationship.model_validate(rel.model_dump()))

        log.info("Merged entity {} into {}", source_id, target_id)
        return self._entities[target_id]

    def get_entity_stats(self) -> dict:
        by_type = {t.value: len(ids) for t, ids in self._by_type.items() if ids}
        by_rel_type: dict[str, int] = defaultdict(int)
        for rel in self._relationships.values():
            by_rel_type[rel.relationship_type.value] += 1
        return {
            "total_entities": len(self._entities),
            "total_relationships": len(self._relationships),
            "entities_by_type": by_type,
            "relationships_by_type": dict(by_rel_type),
            "orphaned": len(self.find_orphaned_entities()),
            "dangling_relationships": len(self.find_dangling_relationships()),
        }

    def to_graph(self) -> nx.MultiDiGraph:
        """Project the arenas onto a networkx multigraph.

        Bidirectional edges become two graph edges. Endpoints not in the
        registry appear as nodes with ``registered=False``.
        """
        graph = nx.MultiDiGraph()
        for entity in self._entities.values():
            graph.add_node(entity.id, name=entity.name, type=entity.type.value, registered=True)

        for rel in self._relationships.values():
            for ref in (rel.from_entity, rel.to_entity):
                if ref.id not in graph:
                    graph.add_node(ref.id, name=ref.name, type=ref.type.value, registered=False)
            attrs = {"type": rel.relationship_type.value, "strength": rel.strength}
            graph.add_edge(rel.from_entity.id, rel.to_entity.id, key=rel.id, **attrs)
            if rel.bidirectional:
                graph.add_edge(rel.to_entity.id, rel.from_entity.id, key=f"{rel.id}~rev", **attrs)
        return graph

    def find_connected_entities(self, entity_id: str, depth: int = 2) -> list[BaseEntity]:
        """Registered entities reachable by traversable edges within ``depth`` hops."""
        if entity_id not in self._entities:
            return []
        graph = self.to_graph()
        distances = nx.single_source_shortest_path_length(graph, entity_id, cutoff=depth)
        positions = {eid: i for i, eid in enumerate(self._entities)}
        reachable = [
            nid for nid in distances if nid != entity_id and nid in self._entities
        ]
        reachable.sort(key=lambda nid: (distances[nid], positions[nid]))
        return [self._entities[nid] for nid in reachable]

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "entities": [e.model_dump(mode="json") for e in self._entities.values()],
            "relationships": [r.model_dump(mode="json") for r in self._relationships.values()],
        }

    @classmethod
    def from_dict(cls, d: dict, fuzzy_threshold: int | None = None) -> "EntityRegistry":
        """Rebuild a registry verbatim (timestamps are not touched)."""
        registry = cls(fuzzy_threshold=fuzzy_threshold)
        for data in d.get("entities", []):
            entity = BaseEntity.model_validate(data)
            registry._entities[entity.id] = entity
            registry._index(entity)
        for data in d.get("relationships", []):
            registry.add_relationship(EntityRelationship.model_validate(data))
        return registry
