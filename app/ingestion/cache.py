"""Redis-backed read models derived from the directory tables, and their eviction."""
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import redis
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.models.directory import Organization

logger = logging.getLogger(__name__)

SCAN_BATCH = 500


class RedisPrefixCache:
    """All keys of one read model live under ``<prefix>:``; eviction drops them all."""

    def __init__(self, client_provider: Callable[[], redis.Redis], prefix: str, ttl_seconds: int = 3600):
        self.client_provider = client_provider
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    def get_json(self, *parts: str) -> Optional[Any]:
        raw = self.client_provider().get(self.key(*parts))
        return json.loads(raw) if raw is not None else None

    def set_json(self, value: Any, *parts: str):
        self.client_provider().set(self.key(*parts), json.dumps(value, ensure_ascii=False), ex=self.ttl_seconds)

    def evict(self) -> int:
        client = self.client_provider()
        deleted = 0
        batch: List[str] = []
        for key in client.scan_iter(match=f"{self.prefix}:*", count=SCAN_BATCH):
            batch.append(key)
            if len(batch) >= SCAN_BATCH:
                deleted += client.delete(*batch)
                batch.clear()
        if batch:
            deleted += client.delete(*batch)
        logger.info(f"Evicted {deleted} cache keys under {self.prefix}")
        return deleted


class OrganizationTreeCache(RedisPrefixCache):
    """Nested organization tree projection built from ``dw_organizations``."""

    def get_tree(self, session_factory: sessionmaker) -> List[Dict[str, Any]]:
        cached = self.get_json("tree")
        if cached is not None:
            return cached
        with session_factory() as db:
            rows = db.execute(
                select(Organization).where(Organization.status == "ACTIVE").order_by(Organization.organization_code)
            ).scalars().all()
            tree = build_organization_tree(rows)
        self.set_json(tree, "tree")
        return tree


def build_organization_tree(organizations) -> List[Dict[str, Any]]:
    nodes = {
        org.organization_code: {
            "organizationCode": org.organization_code,
            "name": org.name,
            "leaderEmployeeNumber": org.leader_employee_number,
            "children": [],
        }
        for org in organizations
    }
    roots = []
    for org in organizations:
        node = nodes[org.organization_code]
        parent = nodes.get(org.parent_code) if org.parent_code != org.organization_code else None
        if parent is None:
            roots.append(node)
        else:
            parent["children"].append(node)
    return roots
