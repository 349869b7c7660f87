import json
import os
import tempfile

from fastapi.testclient import TestClient

import main

DEMO_RECEIPT = {
    "items": [
        {"name": "Chicken Pasta", "price": 16.99},
        {"name": "Caesar Salad", "price": 12.99},
        {"name": "Garlic Bread", "price": 5.99},
        {"name": "Tiramisu", "price": 8.99},
    ],
    "tax_amount": 3.60,
    "tip_amount": 8.99,
}


def run_demo() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        main.DB_PATH = os.path.join(tmp, "demo.db")
        main.init_db()
        client = TestClient(main.app)

        create_resp = client.post(
            "/session/create",
            json={
                "owner_name": "Alice",
                "restaurant_name": "Smoke Demo",
                "split_type": "custom",
                "venmo_username": "alice-demo",
                "receipt": DEMO_RECEIPT,
            },
        )
        create_resp.raise_for_status()
        session = create_resp.json()
        session_id = session["session_id"]

        bob_resp = client.post(f"/session/{session_id}/join", json={"name": "Bob"})
        bob_resp.raise_for_status()
        bob = bob_resp.json()

        client.put(
            f"/session/{session_id}/selections",
            json={"selections": [{"item_id": "0", "percentage": 100}, {"item_id": "2", "percentage": 50}]},
            headers={"X-Session-Token": session["owner_token"]},
        ).raise_for_status()
        client.put(
            f"/session/{session_id}/selections",
            json={
                "selections": [
                    {"item_id": "1", "percentage": 100},
                    {"item_id": "2", "percentage": 50},
                    {"item_id": "3", "percentage": 100},
                ]
            },
            headers={"X-Session-Token": bob["participant_token"]},
        ).raise_for_status()

        status = client.get(f"/session/{session_id}/status").json()
        if not status["all_selected"]:
            raise RuntimeError("Expected every participant to have selected")

        summary_resp = client.get(f"/session/{session_id}/summary", params={"format": "compact"})
        summary_resp.raise_for_status()
        summary = summary_resp.json()

        pay_resp = client.post(
            f"/session/{session_id}/pay",
            json={"method": "venmo"},
            headers={"X-Session-Token": bob["participant_token"]},
        )
        pay_resp.raise_for_status()

        print("=== Smoke Demo OK ===")
        print("Session ID:", session_id)
        print("Join URL:", session["join_url"])
        print("Compact summary:")
        print(json.dumps(summary, indent=2))
        print("Bob's Venmo link:", pay_resp.json()["deep_link"])


if __name__ == "__main__":
    run_demo()
