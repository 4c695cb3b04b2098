"""Collaborator contracts and their default HTTP clients."""

from agentflow.integrations.base import (
    CollaboratorError,
    Collaborators,
    HttpActionService,
    InferenceProvider,
    SpreadsheetService,
    StorageService,
)
from agentflow.integrations.compute import ComputeClient
from agentflow.integrations.defaults import build_collaborators
from agentflow.integrations.http_action import HttpActionClient
from agentflow.integrations.sheets import GoogleSheetsClient
from agentflow.integrations.storage import StorageClient, save_workflow

__all__ = [
    "CollaboratorError",
    "Collaborators",
    "ComputeClient",
    "GoogleSheetsClient",
    "HttpActionClient",
    "HttpActionService",
    "InferenceProvider",
    "SpreadsheetService",
    "StorageClient",
    "StorageService",
    "build_collaborators",
    "save_workflow",
]
