"""Common FastAPI dependencies."""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from .auth import Identity, get_current_identity
from .config import TrackerConfig
from .consolidation import ConsolidationService
from .document_store import Document, DocumentStore
from .issues import IssueBoard
from .profiles import ProfileService


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    store: DocumentStore
    config: TrackerConfig
    consolidation: ConsolidationService
    board: IssueBoard
    profiles: ProfileService


def build_services(store: DocumentStore, config: TrackerConfig) -> Services:
    return Services(
        store=store,
        config=config,
        consolidation=ConsolidationService(store, config),
        board=IssueBoard(store, config),
        profiles=ProfileService(store, config),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_profile(
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> Document:
    """Profile of the caller, created as pending on first sight."""
    return await services.profiles.ensure_profile(identity.user_id, identity.email)


def require_role(*roles: str):
    async def role_checker(profile: Document = Depends(get_current_profile)) -> Document:
        if profile.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Insufficient privileges")
        return profile

    return role_checker


__all__ = ["Services", "build_services", "get_services", "get_current_profile", "require_role"]
