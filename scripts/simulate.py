"""
Group Order Concurrency Simulation

Hammers a running server with simultaneous joins and item additions and
checks that capacity and spending limits held.
Run from project root: python scripts/simulate.py
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_TABLES = 10

FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
MENU_ITEMS = [
    {"menuItemId": "margherita", "name": "Pizza Margherita", "price": 14.99},
    {"menuItemId": "pepperoni", "name": "Pepperoni Pizza", "price": 16.99},
    {"menuItemId": "caesar", "name": "Caesar Salad", "price": 8.99},
    {"menuItemId": "garlic-bread", "name": "Garlic Bread", "price": 5.99},
    {"menuItemId": "carbonara", "name": "Pasta Carbonara", "price": 13.99},
    {"menuItemId": "tiramisu", "name": "Tiramisu", "price": 7.99},
    {"menuItemId": "coke", "name": "Coke", "price": 2.99},
]


def random_item() -> dict[str, Any]:
    item = random.choice(MENU_ITEMS).copy()
    item["quantity"] = random.randint(1, 2)
    return item


# =============================================================================
# ONE TABLE
# =============================================================================

async def simulate_table(
    client: httpx.AsyncClient,
    table_num: int,
    capacity: int,
    joiners: int,
    limit: float,
    checkout: bool,
) -> dict[str, Any]:
    """Open a group order, race joins and additions against it, then inspect it."""
    start_time = time.time()
    result: dict[str, Any] = {"table": table_num, "violations": []}

    response = await client.post(f"{API_BASE_URL}/group-orders/create", json={
        "restaurantId": "sim_restaurant",
        "tableId": f"table_{table_num}",
        "expirationMinutes": 30,
        "settings": {"maxParticipants": capacity, "allowAnonymous": True},
    })
    if response.status_code != 200:
        result["violations"].append(f"create failed: {response.text[:100]}")
        return result
    created = response.json()["data"]
    group_order_id = created["groupOrderId"]

    # Everyone scans the code at once
    joins = await asyncio.gather(*(
        client.post(f"{API_BASE_URL}/group-orders/join", json={
            "inviteCode": created["displayCode"],
            "userName": f"{random.choice(FIRST_NAMES)} {i}",
        })
        for i in range(joiners)
    ))
    participant_ids = [r.json()["data"]["participantId"] for r in joins if r.status_code == 200]
    result["joined"] = len(participant_ids)
    result["rejected_joins"] = sum(1 for r in joins if r.status_code == 409)

    if not participant_ids:
        result["violations"].append("nobody could join")
        return result

    # Leader-only calls name the first joiner
    leader_id = (await client.get(f"{API_BASE_URL}/group-orders/{group_order_id}")).json()["data"]["leaderId"]
    leader = {"X-Participant-Id": leader_id}

    await client.put(f"{API_BASE_URL}/group-orders/{group_order_id}/spending-limits", json={
        "spendingLimits": {"enabled": True, "defaultLimit": limit},
    }, headers=leader)

    # Each participant fires several additions in parallel
    additions = await asyncio.gather(*(
        client.post(f"{API_BASE_URL}/group-orders/{group_order_id}/add-items", json={
            "participantId": pid,
            "items": [random_item()],
        })
        for pid in participant_ids
        for _ in range(6)
    ))
    result["accepted_items"] = sum(1 for r in additions if r.status_code == 200)
    result["limited_items"] = sum(1 for r in additions if r.status_code == 422)

    await client.put(f"{API_BASE_URL}/group-orders/{group_order_id}/payment-structure", json={
        "paymentStructure": random.choice(["pay_own", "equal_split", "pay_all"]),
    }, headers=leader)

    group_order = (await client.get(f"{API_BASE_URL}/group-orders/{group_order_id}")).json()["data"]

    # Invariant checks
    participants = group_order["participants"]
    if len(participants) != min(capacity, joiners):
        result["violations"].append(
            f"{len(participants)} participants, expected {min(capacity, joiners)}"
        )
    for participant in participants:
        if participant["spentAmount"] > limit + 1e-9:
            result["violations"].append(
                f"{participant['name']} spent {participant['spentAmount']} over {limit}"
            )
        line_total = round(sum(line["total"] for line in participant["items"]), 2)
        if abs(line_total - participant["spentAmount"]) > 0.001:
            result["violations"].append(f"{participant['name']} spend does not match items")

    settlement_total = round(sum(group_order["settlement"].values()), 2)
    if abs(settlement_total - group_order["totals"]["subtotal"]) > 0.001:
        result["violations"].append(
            f"settlement {settlement_total} != total {group_order['totals']['subtotal']}"
        )

    if checkout and group_order["totals"]["itemCount"]:
        response = await client.post(
            f"{API_BASE_URL}/group-orders/{group_order_id}/checkout", headers=leader
        )
        result["checkout"] = response.json()["data"]["status"] if response.status_code == 200 else "error"

    result["total"] = group_order["totals"]["subtotal"]
    result["time"] = round(time.time() - start_time, 3)
    return result


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(
    tables: int = TOTAL_TABLES,
    capacity: int = 6,
    joiners: int = 10,
    limit: float = 40.0,
    checkout: bool = False,
) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 GROUP ORDER SIMULATION - CONCURRENT JOINS & ADDITIONS")
    print("=" * 70)
    print(f"📋 Tables: {tables}  (capacity {capacity}, {joiners} diners racing each)")
    print(f"💳 Spending limit: ${limit:.2f}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(timeout=30.0) as client:
        health = await client.get(f"{API_BASE_URL}/health")
        if health.status_code != 200:
            print(f"❌ Server not healthy: {health.text[:100]}")
            return {"ok": False}

        results = await asyncio.gather(*(
            simulate_table(client, i + 1, capacity, joiners, limit, checkout)
            for i in range(tables)
        ))
    total_time = round(time.time() - start_time, 2)

    violations = [(r["table"], v) for r in results for v in r["violations"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n👥 Joined: {sum(r.get('joined', 0) for r in results)}"
          f"  (rejected as full: {sum(r.get('rejected_joins', 0) for r in results)})")
    print(f"🍕 Items accepted: {sum(r.get('accepted_items', 0) for r in results)}"
          f"  (rejected by limit: {sum(r.get('limited_items', 0) for r in results)})")
    print(f"💰 Total ordered: ${sum(r.get('total', 0) for r in results):.2f}")
    if checkout:
        finalized = sum(1 for r in results if r.get("checkout") == "finalized")
        print(f"✅ Finalized: {finalized}/{tables}")
    print(f"⏱️  Total Time: {total_time}s")

    if violations:
        print(f"\n❌ {len(violations)} invariant violation(s):")
        for table, violation in violations[:10]:
            print(f"   Table {table}: {violation}")
    else:
        print("\n✅ Capacity, limits and settlement totals held on every table")
    print("=" * 70)

    return {"ok": not violations, "total_time": total_time, "results": results}


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Group Order Concurrency Simulation")
    parser.add_argument("--tables", type=int, default=TOTAL_TABLES, help="Number of group orders")
    parser.add_argument("--capacity", type=int, default=6, help="maxParticipants per group order")
    parser.add_argument("--joiners", type=int, default=10, help="Simultaneous joins per group order")
    parser.add_argument("--limit", type=float, default=40.0, help="Default spending limit")
    parser.add_argument("--checkout", action="store_true", help="Check out every group order")
    args = parser.parse_args()

    outcome = asyncio.run(run_simulation(
        tables=args.tables,
        capacity=args.capacity,
        joiners=args.joiners,
        limit=args.limit,
        checkout=args.checkout,
    ))
    sys.exit(0 if outcome["ok"] else 1)
