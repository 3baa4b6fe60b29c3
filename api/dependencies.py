"""
FastAPI dependencies (shared across routes).

Services are built once in ``main.create_app`` and parked on
``app.state``; these getters hand them to route handlers.
"""

from __future__ import annotations

from fastapi import Request

from config.settings import Settings
from connectors.coordinator import OAuthFlowCoordinator
from connectors.credential_store import CredentialStore
from connectors.registry import ConnectorRegistry
from notifications.gateway import NotificationGateway
from notifications.registry import ConnectionRegistry


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_connector_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.connectors


def get_coordinator(request: Request) -> OAuthFlowCoordinator:
    return request.app.state.coordinator


def get_credential_store(request: Request) -> CredentialStore:
    return request.app.state.credentials


def get_connection_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.connections


def get_gateway(request: Request) -> NotificationGateway:
    return request.app.state.gateway
