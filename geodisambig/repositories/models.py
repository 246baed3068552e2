"""
SQLAlchemy ORM models for the authoritative gazetteer.

Mirrors the snapshot schema; in production these tables live in PostGIS
next to the geometry columns, which the engine never reads directly.
"""
from sqlalchemy import JSON, BigInteger, Column, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from geodisambig.db import Base


class PlaceORM(Base):
    __tablename__ = "places"

    id = Column(Integer, primary_key=True)
    canonical_name = Column(String, nullable=False)
    normalized_name = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    population = Column(BigInteger, nullable=True)
    country_code = Column(String(3), nullable=True)
    external_ids = Column(JSON, nullable=True)
    min_lat = Column(Float, nullable=True)
    min_lon = Column(Float, nullable=True)
    max_lat = Column(Float, nullable=True)
    max_lon = Column(Float, nullable=True)

    aliases = relationship(
        "PlaceAliasORM",
        back_populates="place",
        cascade="all, delete-orphan",
    )


class PlaceAliasORM(Base):
    __tablename__ = "place_aliases"

    place_id = Column(Integer, ForeignKey("places.id", ondelete="CASCADE"), primary_key=True)
    normalized_alias = Column(String, primary_key=True, index=True)
    alias = Column(String, nullable=False)

    place = relationship("PlaceORM", back_populates="aliases")


class PlaceHierarchyORM(Base):
    __tablename__ = "place_hierarchy"

    child_id = Column(Integer, ForeignKey("places.id", ondelete="CASCADE"), primary_key=True)
    parent_id = Column(Integer, ForeignKey("places.id", ondelete="CASCADE"), nullable=False, index=True)
