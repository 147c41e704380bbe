#!/usr/bin/env python3
"""
Launch script for the ISAC UAV fleet demonstration
"""
import subprocess
import time
import sys
import os

ROOT = os.path.dirname(os.path.abspath(__file__))


def launch_base_station():
    """Launch the ISAC base station"""
    print("Starting base station...")
    return subprocess.Popen(
        [sys.executable, '-m', 'base_station.main', 'config/base_station.yaml'],
        cwd=ROOT
    )


def launch_uav(uav_id, x, y, z=0):
    """Launch single UAV"""
    print(f"Starting UAV {uav_id} at ({x}, {y}, {z})")
    return subprocess.Popen(
        [sys.executable, '-m', 'uav.client', str(uav_id), str(x), str(y), str(z)],
        cwd=ROOT
    )


def main():
    """Launch complete system"""
    processes = []

    try:
        base_station = launch_base_station()
        processes.append(base_station)
        time.sleep(2)  # Wait for base station to start

        # Start UAV fleet at increasing range from the base station
        uav_positions = [
            (50, 0, 30),
            (200, 100, 40),
            (600, -300, 50),
            (-900, 400, 60),
        ]

        for i, (x, y, z) in enumerate(uav_positions, start=1):
            uav = launch_uav(f"uav-{i}", x, y, z)
            processes.append(uav)
            time.sleep(0.5)

        print(f"\nSystem running: 1 base station + {len(uav_positions)} UAVs")
        print("Dashboard status: http://localhost:8085/api/status")
        print("Press Ctrl+C to stop all processes\n")

        while True:
            time.sleep(1)

    except KeyboardInterrupt:
        print("\nShutting down system...")
        for p in processes:
            p.terminate()

        for p in processes:
            p.wait()

        print("System stopped")


if __name__ == '__main__':
    main()
