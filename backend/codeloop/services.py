import os

from fastapi import Request

from codeloop.agent.interactions import QuestionBroker, ScreenshotBroker
from codeloop.agent.skills import SkillRegistry
from codeloop.config import Settings
from codeloop.errors import PathEscapeError
from codeloop.gateway import GatewayCaches
from codeloop.models.factory import build_model_client
from codeloop.sandbox.processes import ProcessManager


class Services:
    """Application-wide collaborators, created once per app and shared by routes."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.gateway_caches = GatewayCaches()
        self.screenshots = ScreenshotBroker()
        self.questions = QuestionBroker()
        self.skills = SkillRegistry()
        self.processes = ProcessManager(
            kill_grace_seconds=settings.kill_grace_seconds,
            exec_timeout=settings.exec_timeout,
        )
        self.model_client_factory = build_model_client


def get_services(request: Request) -> Services:
    return request.app.state.services


def resolve_project_path(settings: Settings, path: str) -> str:
    """Absolute project directory, which must live under the configured projects dir."""
    root = os.path.realpath(settings.projects_dir)
    full = os.path.realpath(os.path.join(root, path))
    if full == root or not full.startswith(root + os.sep):
        raise PathEscapeError(path)
    return full
