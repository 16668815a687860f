"""
CLI commands for the frequent buyer platform.

Usage:
    flask loyalty expire-windows                  # Drop expired purchases from progress
    flask loyalty expire-rewards                  # Revoke fully expired earned rewards
    flask loyalty catchup --tenant-id 1           # Replay missed orders
    flask loyalty reconcile-pos                   # Repair POS discount state
    flask loyalty retry-failed                    # Retry failed loyalty events
    flask loyalty rebuild-summaries --tenant-id 1 # Rebuild customer summaries
"""
from .loyalty import init_app as init_loyalty_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_loyalty_commands(app)
