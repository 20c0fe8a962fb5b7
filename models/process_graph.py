from datetime import datetime
import uuid
from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from .base import Base
from .scope_records import ProcessNodeRecord


class ProcessFlowchart(Base):
    """
    A client's process flowchart: the node graph whose scopes are allocated.
    ``version`` is bumped on every committed edit.
    """
    __tablename__ = 'process_flowcharts'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_by = Column(String, nullable=True)
    last_modified_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    nodes = relationship(
        "ProcessNode",
        back_populates="flowchart",
        order_by="ProcessNode.position",
        cascade="all, delete-orphan",
    )
    edges = relationship("ProcessEdge", back_populates="flowchart", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ProcessFlowchart(client={self.client_id}, version={self.version}, nodes={len(self.nodes)})>"


class ProcessNode(Base):
    """
    One facility/process.  ``details`` holds department, location, coordinates
    and the ordered ``scopeDetails`` list.
    """
    __tablename__ = 'process_nodes'

    pk = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    id = Column(String, nullable=False, index=True)
    flowchart_id = Column(String, ForeignKey('process_flowcharts.id'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    label = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    is_deleted = Column(Boolean, nullable=False, default=False)

    flowchart = relationship("ProcessFlowchart", back_populates="nodes")

    def to_record(self) -> ProcessNodeRecord:
        return ProcessNodeRecord.from_dict({
            "id": self.id,
            "label": self.label,
            "isDeleted": self.is_deleted,
            "details": self.details or {},
        })

    def apply_record(self, record: ProcessNodeRecord) -> None:
        self.label = record.label
        self.is_deleted = record.is_deleted
        self.details = record.details_dict()

    def __repr__(self):
        return f"<ProcessNode(id={self.id}, label={self.label})>"


class ProcessEdge(Base):
    __tablename__ = 'process_edges'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    flowchart_id = Column(String, ForeignKey('process_flowcharts.id'), nullable=False)
    source_node_id = Column(String, nullable=False)
    target_node_id = Column(String, nullable=False)
    edge_metadata = Column(JSON, nullable=True)

    flowchart = relationship("ProcessFlowchart", back_populates="edges")

    def __repr__(self):
        return f"<ProcessEdge(source={self.source_node_id}, target={self.target_node_id})>"
