"""Database models"""
from sqlalchemy import Column, String, Integer, DateTime, Float, JSON, Text, Index, text
from datetime import datetime
from tunnelcore.database import Base
import uuid


def generate_uuid():
    return str(uuid.uuid4())


TUNNEL_STATUSES = ("active", "inactive", "testing", "failed")


class Node(Base):
    __tablename__ = "nodes"
    
    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False)
    ip_address = Column(String, nullable=False)
    port = Column(Integer, default=22)
    status = Column(String, default="active")
    node_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class Tunnel(Base):
    __tablename__ = "tunnels"
    __table_args__ = (
        Index(
            "ux_tunnels_active_port",
            "port",
            unique=True,
            sqlite_where=text("status = 'active'"),
        ),
    )
    
    id = Column(String, primary_key=True, default=generate_uuid)
    near_node_id = Column(String, nullable=False)
    far_node_id = Column(String, nullable=True)
    engine = Column(String, nullable=False)
    transport = Column(String, default="tcp")
    port = Column(Integer, nullable=False)
    status = Column(String, default="inactive")
    score = Column(Float, default=0)
    latency_ms = Column(Float, nullable=True)
    jitter_ms = Column(Float, nullable=True)
    priority = Column(Integer, default=0)
    config = Column(JSON, default=dict)
    error_message = Column(Text, nullable=True)
    last_check = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MonitorResult(Base):
    __tablename__ = "monitor_results"
    
    id = Column(String, primary_key=True, default=generate_uuid)
    tunnel_id = Column(String, nullable=True, index=True)
    target = Column(String, nullable=False)
    latency_ms = Column(Float, nullable=True)
    jitter_ms = Column(Float, nullable=True)
    packet_loss = Column(Float, default=0)
    score = Column(Float, default=0)
    status = Column(String, nullable=False)
    checked_at = Column(DateTime, default=datetime.utcnow, index=True)


class Setting(Base):
    __tablename__ = "settings"
    
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
