"""Forwarding approved requests to Radarr and Sonarr."""

from mediaseer.acquisition.dispatch import AcquisitionError, select_server, send_to_acquisition

__all__ = ["AcquisitionError", "select_server", "send_to_acquisition"]
