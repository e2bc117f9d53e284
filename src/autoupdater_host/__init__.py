"""Host bootstrap and self-maintenance for the AutoUpdater agent.

Installs the container runtime and VPN client, fetches integrity-verified
helper scripts, keeps the pinned AutoUpdater version consistent across
artifacts, launches the AutoUpdater container and hands the first
deployment over to it.
"""

__version__ = "0.1.0"
