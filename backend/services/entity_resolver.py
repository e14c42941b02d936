"""
Cross-source team resolution.

Maps the free-text team names each source emits onto canonical ``teams``
rows.  Resolution order for ``resolve_entity_id``:

1. exact ``(source, raw_name)`` hit on a previously written alias
2. exact case-insensitive match on the normalized canonical name
3. fuzzy Levenshtein similarity strictly above ``FUZZY_THRESHOLD``
4. auto-create a team (only when asked to)

Paths 2-4 persist what they learned (an alias in ``external_ids`` or a new
team) and update the in-memory cache, so the same name from the same source
resolves via path 1 next time.

Alias writes are compare-and-swap on ``teams.version``; losing a race simply
re-reads the row and tries again.  Team creation absorbs a uniqueness
conflict by aliasing onto whichever concurrent creator won.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.models import SessionLocal, Team
from backend.pipeline.errors import EntityNotResolved, PersistenceConflict, PipelineError
from backend.services.team_mapping import normalize_team_name

logger = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.85
MAX_ALIAS_ATTEMPTS = 5


@dataclass
class Entity:
    id: int
    canonical_name: str
    short_name: str
    external_ids: Dict[str, str] = field(default_factory=dict)
    conference: Optional[str] = None
    version: int = 1


@dataclass(frozen=True)
class ResolutionResult:
    entity_id: int
    was_created: bool
    confidence: str  # "exact" | "fuzzy" | "created"


def similarity(a: str, b: str) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)); two empty strings score 1.0."""
    return Levenshtein.normalized_similarity(a, b)


def generate_short_name(name: str) -> str:
    """
    Initials acronym for multi-word names when it fits in five characters,
    otherwise the first five characters.  Always uppercase.

    >>> generate_short_name("North Carolina State")
    'NCS'
    >>> generate_short_name("Gonzaga")
    'GONZA'
    """
    words = name.split()
    if len(words) >= 2:
        acronym = "".join(word[0] for word in words)
        if len(acronym) <= 5:
            return acronym.upper()
    return name.replace(" ", "")[:5].upper()


def _to_entity(row: Team) -> Entity:
    return Entity(
        id=row.id,
        canonical_name=row.name,
        short_name=row.short_name,
        external_ids=dict(row.external_ids or {}),
        conference=row.conference,
        version=row.version or 1,
    )


class EntityResolver:
    """
    Resolve raw team names to team ids.

    One instance caches every team on first use.  Create one per job run;
    the cache is not shared between instances.
    """

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory
        self._entities: Dict[int, Entity] = {}
        self._by_external_id: Dict[Tuple[str, str], int] = {}
        self._initialized = False

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def initialize_cache(self) -> None:
        db = self._session_factory()
        try:
            rows = db.query(Team).order_by(Team.id).all()
            entities = [_to_entity(row) for row in rows]
        finally:
            db.close()

        self._entities = {}
        self._by_external_id = {}
        for entity in entities:
            self._remember(entity)
        self._initialized = True
        logger.info("EntityResolver: cached %d teams", len(self._entities))

    def clear_cache(self) -> None:
        self._entities = {}
        self._by_external_id = {}
        self._initialized = False

    def get_entity_by_id(self, entity_id: int) -> Optional[Entity]:
        self._ensure_cache()
        return self._entities.get(entity_id)

    def _ensure_cache(self) -> None:
        if not self._initialized:
            self.initialize_cache()

    def _remember(self, entity: Entity) -> None:
        previous = self._entities.get(entity.id)
        if previous is not None:
            for key in list(previous.external_ids.items()):
                if self._by_external_id.get(key) == entity.id:
                    del self._by_external_id[key]
        self._entities[entity.id] = entity
        for key in entity.external_ids.items():
            # Lowest id wins if two rows ever claim the same alias.
            self._by_external_id.setdefault(key, entity.id)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_entity_id(
        self,
        raw_name: str,
        source: str,
        auto_create: bool = False,
        group_id: Optional[str] = None,
        allow_fuzzy: bool = True,
    ) -> ResolutionResult:
        """
        Resolve ``raw_name`` as spelled by ``source``.

        ``group_id`` is the conference stored on auto-created teams.
        ``allow_fuzzy=False`` is for authoritative team lists, where a near
        miss ("South Carolina" vs "North Carolina") is a different school.
        Raises EntityNotResolved when nothing matches and ``auto_create``
        is off.
        """
        self._ensure_cache()
        normalized = normalize_team_name(raw_name)

        entity_id = self._by_external_id.get((source, raw_name))
        if entity_id is not None:
            return ResolutionResult(entity_id, False, "exact")

        match = self._find_by_name(normalized)
        if match is not None:
            self._write_alias(match.id, source, raw_name)
            return ResolutionResult(match.id, False, "exact")

        match = self._fuzzy_match(normalized) if allow_fuzzy else None
        if match is not None:
            logger.info(
                "EntityResolver: fuzzy matched '%s' to '%s'", normalized, match.canonical_name
            )
            self._write_alias(match.id, source, raw_name)
            return ResolutionResult(match.id, False, "fuzzy")

        if auto_create:
            return self._create_entity(normalized, source, raw_name, group_id)

        raise EntityNotResolved(raw_name, normalized, source)

    def resolve_entity_ids(
        self,
        items: Iterable[Tuple[str, str]],
        auto_create: bool = False,
        group_id: Optional[str] = None,
        allow_fuzzy: bool = True,
    ) -> Dict[str, ResolutionResult]:
        """
        Resolve ``(raw_name, source)`` pairs.  Keys are ``"source:raw_name"``;
        names that fail to resolve, including on storage errors, are logged
        and left out.
        """
        self._ensure_cache()
        results: Dict[str, ResolutionResult] = {}
        for raw_name, source in items:
            key = f"{source}:{raw_name}"
            try:
                results[key] = self.resolve_entity_id(
                    raw_name, source, auto_create=auto_create, group_id=group_id,
                    allow_fuzzy=allow_fuzzy,
                )
            except EntityNotResolved as exc:
                logger.error("EntityResolver: failed to resolve %s: %s", key, exc)
            except (PipelineError, SQLAlchemyError) as exc:
                logger.error("EntityResolver: failed to resolve %s: %s", key, exc, exc_info=True)
        return results

    def _find_by_name(self, normalized: str) -> Optional[Entity]:
        wanted = normalized.lower()
        for entity in self._entities.values():
            if entity.canonical_name.lower() == wanted:
                return entity
        return None

    def _fuzzy_match(self, normalized: str) -> Optional[Entity]:
        wanted = normalized.lower()
        best: Optional[Entity] = None
        best_score = FUZZY_THRESHOLD
        for entity in sorted(self._entities.values(), key=lambda e: e.id):
            # Rounded so 1 - 3/20 compares equal to the threshold, not above it.
            score = round(similarity(wanted, entity.canonical_name.lower()), 9)
            # Strictly greater: ties keep the lower id seen first.
            if score > best_score:
                best, best_score = entity, score
        return best

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write_alias(self, entity_id: int, source: str, raw_name: str) -> None:
        """Set ``external_ids[source] = raw_name`` with a versioned CAS update."""
        for attempt in range(1, MAX_ALIAS_ATTEMPTS + 1):
            db = self._session_factory()
            try:
                row = db.get(Team, entity_id)
                if row is None:
                    raise PersistenceConflict(f"Team {entity_id} disappeared during alias write")
                current = _to_entity(row)

                if current.external_ids.get(source) == raw_name:
                    self._remember(current)
                    return

                external_ids = dict(current.external_ids)
                external_ids[source] = raw_name
                version = current.version
                updated = (
                    db.query(Team)
                    .filter(Team.id == entity_id, Team.version == version)
                    .update(
                        {
                            Team.external_ids: external_ids,
                            Team.version: version + 1,
                            Team.updated_at: datetime.utcnow(),
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
            finally:
                db.close()

            if updated:
                current.external_ids = external_ids
                current.version = version + 1
                self._remember(current)
                return
            logger.debug(
                "EntityResolver: alias write on team %s lost a race (attempt %d)", entity_id, attempt
            )

        raise PersistenceConflict(
            f"Could not write alias {source}:{raw_name} to team {entity_id} "
            f"after {MAX_ALIAS_ATTEMPTS} attempts"
        )

    def _create_entity(
        self, normalized: str, source: str, raw_name: str, group_id: Optional[str]
    ) -> ResolutionResult:
        db = self._session_factory()
        try:
            row = Team(
                name=normalized,
                short_name=generate_short_name(normalized),
                conference=group_id,
                external_ids={source: raw_name},
                version=1,
            )
            db.add(row)
            db.commit()
            entity = _to_entity(row)
        except IntegrityError:
            # A concurrent run created the same canonical name first.
            db.rollback()
            winner = (
                db.query(Team)
                .filter(func.lower(Team.name) == normalized.lower())
                .one_or_none()
            )
            if winner is None:
                raise PersistenceConflict(f"Team '{normalized}' conflicted but was not found")
            self._remember(_to_entity(winner))
            winner_id = winner.id
            db.close()
            self._write_alias(winner_id, source, raw_name)
            logger.info("EntityResolver: '%s' created concurrently, aliased onto team %s",
                        normalized, winner_id)
            return ResolutionResult(winner_id, False, "created")
        finally:
            db.close()

        self._remember(entity)
        logger.info("EntityResolver: created team '%s' (%s) from %s", normalized, entity.id, source)
        return ResolutionResult(entity.id, True, "created")

    def cached_entities(self) -> List[Entity]:
        self._ensure_cache()
        return sorted(self._entities.values(), key=lambda e: e.id)
