"""Run the mirror: python -m finsync.server"""

from finsync.server.app import run_server


if __name__ == "__main__":
    run_server()
