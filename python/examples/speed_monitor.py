"""
Example: Watching a signal while changing another one.

Subscribes to Vehicle.Speed and prints every update, while a second task
asks the gearbox for new target gears. Survives broker restarts thanks to the reconnect policy.

Usage:
1. First, run the stub broker in a separate terminal
2. Then run this script

python e2e/stub_broker.py                 # Terminal 1
python python/examples/speed_monitor.py   # Terminal 2
"""

import asyncio
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from brokerlink import (
    Client,
    ClientConfig,
    ReconnectPolicy,
    SubscriptionOverflow,
    ValueType,
    View,
    default_pretty_handler,
)


async def watch_speed(client: Client, updates: int):
    """Print speed updates until enough have arrived."""
    unit = (await client.get_metadata(["Vehicle.Speed"]))["Vehicle.Speed"].unit or ""
    async with await client.subscribe_value("Vehicle.Speed", ValueType.FLOAT32) as stream:
        seen = 0
        while seen < updates:
            try:
                speed = await stream.next()
            except SubscriptionOverflow:
                print("Fell behind, some updates were dropped")
                continue
            seen += 1
            print(f"Speed: {speed:6.1f} {unit}")


async def shift_gears(client: Client):
    for gear in (1, 2, 3, 4, 3):
        await client.set_value("Vehicle.Gear", gear, ValueType.INT32, view=View.TARGET)
        target = await client.get_value("Vehicle.Gear", int, view=View.TARGET)
        print(f"Gear -> {target} (now in {await client.get_value('Vehicle.Gear', int)})")
        await asyncio.sleep(1.0)


async def main():
    config = ClientConfig(
        default_timeout=5.0,
        reconnect=ReconnectPolicy.exponential(delay=0.5, max_delay=5.0, max_attempts=None),
    )

    async with Client("localhost:55555", config, log_handler=default_pretty_handler) as client:
        client.add_state_listener(lambda state: print(f"Connection: {state.value}"))

        await asyncio.gather(watch_speed(client, updates=20), shift_gears(client))

        print("\nMetrics:", client.metrics.to_dict())


if __name__ == "__main__":
    asyncio.run(main())
