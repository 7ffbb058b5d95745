# publisher/generator.py
import os
import random
import time
from datetime import datetime, timezone

import requests
from faker import Faker

# Configuration
TARGET_URL = os.getenv("TARGET_URL", "http://localhost:8080/api/webhook")
EVENT_COUNT = int(os.getenv("EVENT_COUNT", "100"))  # events to send
DELAY = float(os.getenv("DELAY", "1.0"))  # seconds between requests
DUPLICATE_RATE = float(os.getenv("DUPLICATE_RATE", "0.2"))

fake = Faker()

EVENT_TYPES = [
    "intrusion",
    "loitering",
    "helmet_missing",
    "fire_smoke",
    "vehicle_wrong_way",
]


def generate_event():
    """One detection as a camera/analytics box would post it."""
    snapshot = fake.uuid4()
    event = {
        "event_type": random.choice(EVENT_TYPES),
        "image_url": f"https://{fake.domain_name()}/snapshots/{snapshot}.jpg",
        "camera_id": f"cam-{fake.random_int(min=1, max=32):02d}",
        "confidence": round(random.uniform(0.5, 0.99), 2),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if random.random() < 0.5:
        event["audio_url"] = f"https://{fake.domain_name()}/alerts/{snapshot}.wav"
    return event


def send_event(event, is_retry=False):
    """POST the event to the webhook."""
    tag = "[DUPLICATE/RETRY]" if is_retry else "[NEW]"
    try:
        response = requests.post(TARGET_URL, json=event, timeout=5)
    except requests.RequestException as e:
        print(f"[ERROR] Failed to send {event['image_url']}: {e}")
        return None
    print(f"{tag} {event['event_type']} {event['image_url']} | Status: {response.status_code}")
    return response


def main():
    print(f"Starting publisher... Target: {TARGET_URL}")

    for _ in range(EVENT_COUNT):
        event = generate_event()
        send_event(event)

        # Re-send the same snapshot: the service must update, not duplicate
        if random.random() < DUPLICATE_RATE:
            time.sleep(0.05)
            retry = dict(event, confidence=round(random.uniform(0.5, 0.99), 2))
            send_event(retry, is_retry=True)

        time.sleep(DELAY)

    print("Publisher finished sending events.")


if __name__ == "__main__":
    main()
