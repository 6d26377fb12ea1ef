"""Accessors for the services the app factory attaches to ``app.state``."""

from starlette.requests import HTTPConnection

from policyglass.services.job_store import JobStore
from policyglass.services.notifications import NotificationHub
from policyglass.services.reports import ReportRepository
from policyglass.workers.orchestrator import JobOrchestrator


def get_orchestrator(conn: HTTPConnection) -> JobOrchestrator:
    return conn.app.state.orchestrator


def get_store(conn: HTTPConnection) -> JobStore:
    return conn.app.state.job_store


def get_hub(conn: HTTPConnection) -> NotificationHub:
    return conn.app.state.hub


def get_reports(conn: HTTPConnection) -> ReportRepository:
    return conn.app.state.reports
