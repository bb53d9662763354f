"""
Agent memory database models
SQLite schema (embeddings stored as little-endian float32 blobs)
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
import uuid

import numpy as np
from sqlalchemy import (
    Column, Integer, String, Text, Float,
    DateTime, ForeignKey, CheckConstraint, Index, JSON, LargeBinary,
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    """Naive UTC timestamp used for every persisted datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid_default() -> str:
    return str(uuid.uuid4())


class Float32Vector(TypeDecorator):
    """Stores a float list as packed IEEE-754 little-endian float32 values."""

    impl = LargeBinary
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return np.asarray(value, dtype="<f4").tobytes()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return np.frombuffer(value, dtype="<f4").astype(float).tolist()


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class FactCategory(str, PyEnum):
    personal = "personal"
    preference = "preference"
    goal = "goal"
    trait = "trait"


class MemoryCategory(str, PyEnum):
    observation = "observation"
    event = "event"
    feeling = "feeling"
    learning = "learning"


class Vividness(str, PyEnum):
    vivid = "vivid"
    clear = "clear"
    hazy = "hazy"
    fragment = "fragment"


class Mood(str, PyEnum):
    happy = "happy"
    neutral = "neutral"
    concerned = "concerned"
    excited = "excited"


class LinkType(str, PyEnum):
    similar = "similar"
    contradicts = "contradicts"
    updates = "updates"
    related = "related"


# =============================================================================
# User profile
# =============================================================================

class UserFact(Base):
    __tablename__ = "user_facts"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    content = Column(Text, nullable=False)
    category = Column(String(20), nullable=False)
    confidence = Column(Float, default=80.0, nullable=False)
    sources = Column(JSON, default=list, nullable=False)  # agent ids that reported the fact
    embedding = Column(Float32Vector, nullable=False)
    embedding_model = Column(String(100))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 100", name="ck_user_facts_confidence"),
        Index("ix_user_facts_category", "category"),
        Index("ix_user_facts_confidence", "confidence"),
    )


# =============================================================================
# Agent relationship aggregate
# =============================================================================

class AgentRelationship(Base):
    __tablename__ = "agent_relationships"

    agent_id = Column(String(100), primary_key=True)
    trust_level = Column(Float, default=50.0, nullable=False)
    familiarity = Column(Float, default=0.0, nullable=False)
    last_interaction = Column(DateTime, default=utcnow, nullable=False)
    total_interactions = Column(Integer, default=0, nullable=False)
    current_mood = Column(String(20), default=Mood.neutral.value, nullable=False)
    mood_notes = Column(Text)
    domain_memory = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    observations = relationship(
        "AgentMemory",
        back_populates="agent",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("trust_level >= 0 AND trust_level <= 100", name="ck_agent_relationships_trust"),
        CheckConstraint("familiarity >= 0 AND familiarity <= 100", name="ck_agent_relationships_familiarity"),
    )


class AgentMemory(Base):
    __tablename__ = "agent_memories"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    agent_id = Column(
        String(100),
        ForeignKey("agent_relationships.agent_id", ondelete="CASCADE"),
        nullable=False,
    )
    content = Column(Text, nullable=False)
    category = Column(String(20), nullable=False)
    strength = Column(Float, default=100.0, nullable=False)
    emotional_weight = Column(Float, default=5.0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_recalled_at = Column(DateTime, default=utcnow, nullable=False)
    recall_count = Column(Integer, default=0, nullable=False)
    linked_memories = Column(JSON, default=list, nullable=False)
    vividness = Column(String(20), default=Vividness.vivid.value, nullable=False)
    embedding = Column(Float32Vector, nullable=False)
    embedding_model = Column(String(100))

    # Superseding chain
    superseded_by = Column(String(36))
    superseded_at = Column(DateTime)

    agent = relationship("AgentRelationship", back_populates="observations")

    __table_args__ = (
        CheckConstraint("strength >= 0 AND strength <= 100", name="ck_agent_memories_strength"),
        Index("ix_agent_memories_agent", "agent_id"),
        Index("ix_agent_memories_strength", "agent_id", "strength"),
        Index("ix_agent_memories_category", "agent_id", "category"),
        Index("ix_agent_memories_superseded", "superseded_by"),
    )


# =============================================================================
# Knowledge graph edges
# =============================================================================

class MemoryLink(Base):
    __tablename__ = "memory_links"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    source_id = Column(
        String(36),
        ForeignKey("agent_memories.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_id = Column(
        String(36),
        ForeignKey("agent_memories.id", ondelete="CASCADE"),
        nullable=False,
    )
    link_type = Column("relationship", String(20), nullable=False)  # similar, contradicts, updates, related
    similarity = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("source_id != target_id", name="ck_memory_links_distinct"),
        Index("ix_memory_links_source", "source_id"),
        Index("ix_memory_links_target", "target_id"),
    )
