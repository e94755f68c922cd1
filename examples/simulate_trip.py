#!/usr/bin/env python3
"""
Trip simulator - drive a running ingestion service through one trip.
Usage: python simulate_trip.py BASE_URL BUS_ID TRIP_ID TAG_ID

Sends a short GPS track around a stop at 0,0, a pickup scan, then ends the
trip and prints the attendance summary. Timestamps are "now" so the
service's staleness check passes.
"""

import sys
import json
import asyncio
from datetime import datetime, timedelta, timezone

import httpx


TRACK = [0.002, 0.001, 0.0, 0.0, 0.001, 0.002]


def _now_iso(offset_s: float = 0.0) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=offset_s)).isoformat()


async def send_track(client: httpx.AsyncClient, bus_id: str) -> None:
    print("\n" + "=" * 60)
    print("STEP 1: GPS track")
    print("=" * 60)
    for i, lat in enumerate(TRACK):
        resp = await client.post(
            "/v1/ingest/location",
            json={"bus_id": bus_id, "lat": lat, "lon": 0.0, "speed_kmh": 25 + i * 5, "timestamp": _now_iso()},
        )
        body = resp.json()
        events = [f"{e['kind']}:{e['stop_id']}" for e in body.get("geofence_events") or []]
        print(f"  fix {i}: {resp.status_code} {body.get('status')} trip={body.get('trip_id')} {events}")
        await asyncio.sleep(0.5)


async def send_scan(client: httpx.AsyncClient, bus_id: str, tag_id: str) -> None:
    print("\n" + "=" * 60)
    print("STEP 2: Pickup scan")
    print("=" * 60)
    resp = await client.post(
        "/v1/ingest/scan",
        json={"bus_id": bus_id, "rfidTag": tag_id, "action": "pickup", "timestamp": _now_iso()},
    )
    print(f"Status: {resp.status_code}")
    print(json.dumps(resp.json(), indent=2))


async def finish(client: httpx.AsyncClient, trip_id: str) -> None:
    print("\n" + "=" * 60)
    print("STEP 3: End trip and read attendance")
    print("=" * 60)
    resp = await client.post(f"/v1/trips/{trip_id}/end")
    print(f"End: {resp.status_code} {resp.json()}")
    resp = await client.get(f"/v1/trips/{trip_id}/attendance")
    summary = resp.json()
    print(f"Counts: {summary.get('counts')}")
    for record in summary.get("records", []):
        print(f"  - {record['student_id']}: {record['status']}")


async def main(base_url: str, bus_id: str, trip_id: str, tag_id: str) -> None:
    async with httpx.AsyncClient(base_url=base_url, timeout=15.0) as client:
        try:
            await send_track(client, bus_id)
            await send_scan(client, bus_id, tag_id)
            await finish(client, trip_id)
        except httpx.HTTPError as e:
            print(f"\n✗ EXCEPTION: {type(e).__name__}: {e}")


if __name__ == "__main__":
    if len(sys.argv) != 5:
        print(__doc__)
        sys.exit(1)
    asyncio.run(main(*sys.argv[1:]))
