"""
Place repository backed by SQLAlchemy (authoritative source).
"""
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from geodisambig.domain.models import BoundingBox, CanonicalPlace, PlaceKind
from geodisambig.domain.names import normalize_name
from geodisambig.repositories.models import PlaceAliasORM, PlaceHierarchyORM, PlaceORM

MAX_HIERARCHY_DEPTH = 8


def _place_from_orm(orm: PlaceORM, admin_path: Tuple[int, ...]) -> CanonicalPlace:
    boundary = None
    if None not in (orm.min_lat, orm.min_lon, orm.max_lat, orm.max_lon):
        boundary = BoundingBox(orm.min_lat, orm.min_lon, orm.max_lat, orm.max_lon)
    return CanonicalPlace(
        place_id=orm.id,
        canonical_name=orm.canonical_name,
        kind=PlaceKind.parse(orm.kind),
        lat=orm.lat,
        lon=orm.lon,
        population=orm.population,
        admin_path=admin_path,
        external_ids=dict(orm.external_ids or {}),
        aliases=frozenset(a.alias for a in orm.aliases),
        boundary=boundary,
        country_code=orm.country_code,
    )


class PlacesRepository:
    """Read operations against the authoritative places tables."""

    def admin_path(self, session: Session, place_id: int) -> Tuple[int, ...]:
        """Root-first ancestor chain ending at place_id; stops on cycles or excessive depth."""
        chain = [place_id]
        current = place_id
        for _ in range(MAX_HIERARCHY_DEPTH):
            parent = session.execute(
                select(PlaceHierarchyORM.parent_id).where(PlaceHierarchyORM.child_id == current)
            ).scalar_one_or_none()
            if parent is None or parent in chain:
                break
            chain.append(parent)
            current = parent
        return tuple(reversed(chain))

    def get_place(self, session: Session, place_id: int) -> Optional[CanonicalPlace]:
        orm = session.execute(
            select(PlaceORM).options(selectinload(PlaceORM.aliases)).where(PlaceORM.id == place_id)
        ).scalar_one_or_none()
        if orm is None:
            return None
        return _place_from_orm(orm, self.admin_path(session, orm.id))

    def find_by_name(self, session: Session, normalized: str) -> List[CanonicalPlace]:
        """Places whose canonical name or an alias normalizes to `normalized`."""
        by_name = select(PlaceORM.id).where(PlaceORM.normalized_name == normalized)
        by_alias = select(PlaceAliasORM.place_id).where(PlaceAliasORM.normalized_alias == normalized)
        ids = set(session.execute(by_name).scalars()) | set(session.execute(by_alias).scalars())
        if not ids:
            return []
        rows = session.execute(
            select(PlaceORM)
            .options(selectinload(PlaceORM.aliases))
            .where(PlaceORM.id.in_(sorted(ids)))
            .order_by(PlaceORM.id)
        ).scalars()
        return [_place_from_orm(orm, self.admin_path(session, orm.id)) for orm in rows]

    def add_place(self, session: Session, place: CanonicalPlace) -> PlaceORM:
        """Insert a place, its aliases and its parent edge. Caller commits."""
        orm = PlaceORM(
            id=place.place_id,
            canonical_name=place.canonical_name,
            normalized_name=normalize_name(place.canonical_name),
            kind=place.kind.value,
            lat=place.lat,
            lon=place.lon,
            population=place.population,
            country_code=place.country_code,
            external_ids=dict(place.external_ids),
        )
        if place.boundary is not None:
            orm.min_lat, orm.min_lon, orm.max_lat, orm.max_lon = place.boundary.to_list()
        seen: Dict[str, str] = {}
        for alias in sorted(place.aliases):
            key = normalize_name(alias)
            if key and key not in seen:
                seen[key] = alias
                orm.aliases.append(PlaceAliasORM(normalized_alias=key, alias=alias))
        session.add(orm)
        if place.parent_id is not None:
            session.add(PlaceHierarchyORM(child_id=place.place_id, parent_id=place.parent_id))
        return orm
