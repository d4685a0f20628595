"""
Closed-loop smoke test using the offline drive tool.
"""

import sys
from pathlib import Path

import numpy as np

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from mpc_stack import load_config
from tools.simulate_drive import build_track, simulate, waypoint_window


def test_waypoint_window_starts_ahead_of_vehicle():
    track_x, track_y = build_track(length=100.0, spacing=5.0, amplitude=0.0, wavelength=50.0)
    ptsx, _ = waypoint_window(track_x, track_y, 12.0, 0.0)
    assert ptsx[0] == 15.0
    assert len(ptsx) == 6


def test_straight_track_stays_on_centerline():
    result = simulate(
        load_config(),
        ticks=15,
        amplitude=0.0,
        wavelength=150.0,
        initial_speed=10.0,
        tick_period=0.05,
    )
    assert result["ticks"] == 15
    assert result["cte_max"] < 0.1
    # Reference speed is above the initial speed
    assert result["mean_speed"] > 10.0
    assert np.all(np.diff(result["path_x"]) > 0.0)
