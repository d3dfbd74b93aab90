from starlette.requests import HTTPConnection

from app.services.connections import ConnectionRegistry
from app.services.engine import OtpEngine
from app.services.identities import IdentityDirectory


def get_engine(connection: HTTPConnection) -> OtpEngine:
    return connection.app.state.engine


def get_directory(connection: HTTPConnection) -> IdentityDirectory:
    return connection.app.state.directory


def get_registry(connection: HTTPConnection) -> ConnectionRegistry:
    return connection.app.state.registry
