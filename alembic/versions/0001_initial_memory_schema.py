"""Initial memory schema: user facts, agent relationships, memories and links.

Revision ID: 0001_initial_memory_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_memory_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "user_facts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="80"),
        sa.Column("sources", sa.JSON(), nullable=False),
        sa.Column("embedding", sa.LargeBinary(), nullable=False),
        sa.Column("embedding_model", sa.String(length=100)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 100",
            name="ck_user_facts_confidence",
        ),
    )
    op.create_index("ix_user_facts_category", "user_facts", ["category"])
    op.create_index("ix_user_facts_confidence", "user_facts", ["confidence"])

    op.create_table(
        "agent_relationships",
        sa.Column("agent_id", sa.String(length=100), primary_key=True),
        sa.Column("trust_level", sa.Float(), nullable=False, server_default="50"),
        sa.Column("familiarity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_interaction", sa.DateTime(), nullable=False),
        sa.Column("total_interactions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_mood", sa.String(length=20), nullable=False, server_default="neutral"),
        sa.Column("mood_notes", sa.Text()),
        sa.Column("domain_memory", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "trust_level >= 0 AND trust_level <= 100",
            name="ck_agent_relationships_trust",
        ),
        sa.CheckConstraint(
            "familiarity >= 0 AND familiarity <= 100",
            name="ck_agent_relationships_familiarity",
        ),
    )

    op.create_table(
        "agent_memories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "agent_id",
            sa.String(length=100),
            sa.ForeignKey("agent_relationships.agent_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("strength", sa.Float(), nullable=False, server_default="100"),
        sa.Column("emotional_weight", sa.Float(), nullable=False, server_default="5"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_recalled_at", sa.DateTime(), nullable=False),
        sa.Column("recall_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("linked_memories", sa.JSON(), nullable=False),
        sa.Column("vividness", sa.String(length=20), nullable=False, server_default="vivid"),
        sa.Column("embedding", sa.LargeBinary(), nullable=False),
        sa.Column("embedding_model", sa.String(length=100)),
        sa.Column("superseded_by", sa.String(length=36)),
        sa.Column("superseded_at", sa.DateTime()),
        sa.CheckConstraint(
            "strength >= 0 AND strength <= 100",
            name="ck_agent_memories_strength",
        ),
    )
    op.create_index("ix_agent_memories_agent", "agent_memories", ["agent_id"])
    op.create_index("ix_agent_memories_strength", "agent_memories", ["agent_id", "strength"])
    op.create_index("ix_agent_memories_category", "agent_memories", ["agent_id", "category"])
    op.create_index("ix_agent_memories_superseded", "agent_memories", ["superseded_by"])

    op.create_table(
        "memory_links",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "source_id",
            sa.String(length=36),
            sa.ForeignKey("agent_memories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "target_id",
            sa.String(length=36),
            sa.ForeignKey("agent_memories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("relationship", sa.String(length=20), nullable=False),
        sa.Column("similarity", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("source_id != target_id", name="ck_memory_links_distinct"),
    )
    op.create_index("ix_memory_links_source", "memory_links", ["source_id"])
    op.create_index("ix_memory_links_target", "memory_links", ["target_id"])


def downgrade() -> None:
    op.drop_index("ix_memory_links_target", table_name="memory_links")
    op.drop_index("ix_memory_links_source", table_name="memory_links")
    op.drop_table("memory_links")

    op.drop_index("ix_agent_memories_superseded", table_name="agent_memories")
    op.drop_index("ix_agent_memories_category", table_name="agent_memories")
    op.drop_index("ix_agent_memories_strength", table_name="agent_memories")
    op.drop_index("ix_agent_memories_agent", table_name="agent_memories")
    op.drop_table("agent_memories")

    op.drop_table("agent_relationships")

    op.drop_index("ix_user_facts_confidence", table_name="user_facts")
    op.drop_index("ix_user_facts_category", table_name="user_facts")
    op.drop_table("user_facts")
