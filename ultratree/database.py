from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, Float, ForeignKey, ForeignKeyConstraint, Index,
                        Integer, String, Text, create_engine)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .config import DEFAULT_DATABASE_URL


def utcnow() -> datetime:
    # naive UTC; SQLite has no timezone-aware DATETIME
    return datetime.now(timezone.utc).replace(tzinfo=None)


Base = declarative_base()


class Tree(Base):
    __tablename__ = "trees"

    name = Column(String(255), primary_key=True)
    dataset = Column(String(255), nullable=False, index=True)
    context_length = Column(Integer, nullable=False)
    config_json = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    # high-water mark for node ids; only ever grows, so a prune never frees an id
    next_node_id = Column(Integer, default=1, nullable=False)


class Example(Base):
    __tablename__ = "examples"

    dataset = Column(String(255), primary_key=True)
    id = Column(Integer, primary_key=True)
    target = Column(String(1000), nullable=False)

    # Relationship to the context window, ordered by position
    contexts = relationship("ExampleContext", back_populates="example",
                            order_by="ExampleContext.position", cascade="all, delete-orphan")


class ExampleContext(Base):
    __tablename__ = "example_contexts"

    dataset = Column(String(255), primary_key=True)
    example_id = Column(Integer, primary_key=True)
    position = Column(Integer, primary_key=True)  # 1-based, matches node.context_k
    path = Column(String(1000), nullable=False)

    example = relationship("Example", back_populates="contexts")

    __table_args__ = (
        ForeignKeyConstraint(["dataset", "example_id"], ["examples.dataset", "examples.id"]),
        Index("idx_context_position", "dataset", "position", "example_id"),
    )


class NodeRecord(Base):
    __tablename__ = "nodes"

    tree = Column(String(255), ForeignKey("trees.name"), primary_key=True)
    id = Column(Integer, primary_key=True)
    exemplar_value = Column(String(1000))
    data_quantity = Column(Integer)
    loss = Column(Float)
    context_k = Column(Integer)
    inner_region_prefix = Column(String(1000))
    inner_node_id = Column(Integer)
    outer_node_id = Column(Integer)
    parent_id = Column(Integer)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    children_populated_at = Column(DateTime)
    has_children = Column(Boolean, default=False, nullable=False)
    being_analysed = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_nodes_parent", "tree", "parent_id"),
        # most_urgent_leaf scans unsplit, unlocked nodes by loss
        Index("idx_nodes_leaf_loss", "tree", "has_children", "being_analysed", "loss"),
    )


class BucketEntry(Base):
    __tablename__ = "node_bucket"

    tree = Column(String(255), ForeignKey("trees.name"), primary_key=True)
    example_id = Column(Integer, primary_key=True)
    node_id = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_bucket_node", "tree", "node_id"),
    )


class Decoding(Base):
    __tablename__ = "decodings"

    id = Column(Integer, primary_key=True)
    path = Column(String(1000), nullable=False, index=True)
    word = Column(String(255), nullable=False)


class EvaluationRun(Base):
    __tablename__ = "evaluation_runs"

    id = Column(Integer, primary_key=True)
    description = Column(Text, nullable=False)
    trees = Column(Text, nullable=False)  # comma-separated tree names
    model_node_count = Column(Integer)
    cutoff = Column(DateTime)
    dataset = Column(String(255), nullable=False)
    started_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime)
    number_of_data_points = Column(Integer)
    number_of_failures = Column(Integer)
    total_loss = Column(Float)
    average_depth = Column(Float)
    average_in_region_hits = Column(Float)

    inferences = relationship("InferenceRecord", back_populates="run")


class InferenceRecord(Base):
    __tablename__ = "inferences"

    id = Column(Integer, primary_key=True)
    run_id = Column(Integer, ForeignKey("evaluation_runs.id"), nullable=False, index=True)
    example_id = Column(Integer, nullable=False)
    final_node_id = Column(Integer)
    predicted_path = Column(String(1000))
    correct_path = Column(String(1000))
    loss = Column(Float)
    depth = Column(Integer)
    in_region = Column(Integer)
    predicted_at = Column(DateTime, default=utcnow)

    run = relationship("EvaluationRun", back_populates="inferences")


def make_engine(url: str = DEFAULT_DATABASE_URL):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Create all tables
def create_tables(engine):
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory):
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
