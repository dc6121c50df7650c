"""Repository HTTP client used by the submission engine."""

from docvault_submit.client.config import Settings
from docvault_submit.client.repository_client import RepositoryClient, RepositoryError
from docvault_submit.client.session import Session

__all__ = ["RepositoryClient", "RepositoryError", "Session", "Settings"]
