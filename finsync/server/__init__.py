"""Remote mirror server package."""

from finsync.server.app import create_app, run_server
from finsync.server.database import MirrorDatabase, MirrorError

__all__ = ["MirrorDatabase", "MirrorError", "create_app", "run_server"]
