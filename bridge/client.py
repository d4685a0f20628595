"""
Python client helper for the MPC bridge server.
Runs ticks over HTTP, used by the offline tools.
"""

import logging
from dataclasses import asdict
from typing import Optional, Dict

import requests

from data.formats.data_format import Telemetry

logger = logging.getLogger(__name__)


class MPCBridgeClient:
    """Client for communicating with the MPC bridge server."""

    def __init__(self, base_url: str = "http://localhost:4567", timeout: float = 2.0):
        """
        Initialize bridge client.

        Args:
            base_url: Base URL of the bridge server
            timeout: Request timeout (seconds)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def send_telemetry(self, telemetry: Telemetry) -> Optional[Dict]:
        """
        Run one control tick on the server.

        Args:
            telemetry: Telemetry sample

        Returns:
            Steer payload dictionary or None if the request failed
        """
        try:
            response = self.session.post(
                f"{self.base_url}/api/telemetry",
                json=asdict(telemetry),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.warning(f"Error sending telemetry: {e}")
            return None

    def get_control_command(self) -> Optional[Dict]:
        """
        Get latest control command sent by the server.

        Returns:
            Control command dictionary or None if not available
        """
        try:
            response = self.session.get(f"{self.base_url}/api/vehicle/control", timeout=0.5)
            response.raise_for_status()
            return response.json()
        except requests.RequestException:
            return None

    def health_check(self) -> bool:
        """
        Check if bridge server is healthy.

        Returns:
            True if healthy, False otherwise
        """
        try:
            response = self.session.get(f"{self.base_url}/api/health", timeout=1.0)
            response.raise_for_status()
            return True
        except requests.RequestException:
            return False


if __name__ == "__main__":
    # Test client
    client = MPCBridgeClient()

    if client.health_check():
        print("Bridge server is healthy")

        reply = client.send_telemetry(Telemetry(
            ptsx=[10.0, 20.0, 30.0, 40.0],
            ptsy=[0.0, 0.0, 0.0, 0.0],
            x=0.0,
            y=0.0,
            psi=0.0,
            speed=10.0,
        ))
        if reply:
            print(f"Got command: steering={reply['steering_angle']:.3f} "
                  f"throttle={reply['throttle']:.3f}")
    else:
        print("Bridge server is not available")
