from fastapi import Request

from context import AppContext
from database.repository import ProjectRepository
from operators.monitor_operator import JobMonitor
from settings import Settings


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_settings(request: Request) -> Settings:
    return get_context(request).settings


def get_repository(request: Request) -> ProjectRepository:
    return get_context(request).repository


def get_monitor(request: Request) -> JobMonitor:
    return get_context(request).monitor
