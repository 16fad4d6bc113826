"""Relay node directory endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List, Literal
from datetime import datetime
from pydantic import BaseModel
import logging

from tunnelcore.database import get_db
from tunnelcore.models import Node


router = APIRouter()
logger = logging.getLogger(__name__)


class NodeCreate(BaseModel):
    name: str
    role: Literal["near", "far"]
    ip_address: str
    port: int = 22
    metadata: dict = {}


class NodeResponse(BaseModel):
    id: str
    name: str
    role: str
    ip_address: str
    port: int
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("", response_model=NodeResponse)
async def create_node(node: NodeCreate, db: AsyncSession = Depends(get_db)):
    db_node = Node(
        name=node.name,
        role=node.role,
        ip_address=node.ip_address,
        port=node.port,
        node_metadata=node.metadata,
    )
    db.add(db_node)
    await db.commit()
    await db.refresh(db_node)
    logger.info(f"Registered {node.role} node {db_node.id} ({node.ip_address})")
    return db_node


@router.get("", response_model=List[NodeResponse])
async def list_nodes(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Node))
    return result.scalars().all()


@router.get("/{node_id}", response_model=NodeResponse)
async def get_node(node_id: str, db: AsyncSession = Depends(get_db)):
    node = await db.get(Node, node_id)
    if not node:
        raise HTTPException(status_code=404, detail="Node not found")
    return node
