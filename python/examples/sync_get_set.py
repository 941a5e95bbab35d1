"""
Example: Blocking calls from plain synchronous code.

Usage:
python e2e/stub_broker.py                 # Terminal 1
python python/examples/sync_get_set.py    # Terminal 2
"""

import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from brokerlink import RemoteError, SyncClient, Timeout, ValueType


def main():
    with SyncClient("tcp://localhost:55555") as client:
        print("VIN:", client.get_value("Vehicle.VIN", str))
        print("Cabin:", client.get_values(["Cabin.Temperature", "Cabin.Seat.Occupied"]))

        client.set_value("Cabin.Temperature", 19.0, ValueType.FLOAT64)
        print("Cabin temperature set to", client.get_value("Cabin.Temperature", float))

        try:
            client.set_value("Vehicle.VIN", "tampered")
        except RemoteError as e:
            print(f"Refused as expected: {e}")

        with client.subscribe_value("Vehicle.Speed", float) as stream:
            for _ in range(5):
                try:
                    print(f"Speed: {stream.next(timeout=2.0):.1f}")
                except Timeout:
                    print("No speed update within 2s")


if __name__ == "__main__":
    main()
