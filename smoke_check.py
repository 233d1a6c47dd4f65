#!/usr/bin/env python3
"""
Smoke check against a running Case Lifecycle Engine instance.

Walks one lead through conversion, wins the deal and checks that exactly one
delivery project was opened for it.
"""

import requests
import time
import sys

BASE_URL = "http://localhost:8000"


def check_health(base_url=BASE_URL):
    """Check the health endpoint."""
    try:
        response = requests.get(f"{base_url}/health", timeout=10)
        if response.status_code == 200:
            print(f"✅ Health check passed: {response.json()}")
            return True
        print(f"❌ Health check failed: {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Health check error: {e}")
        return False


def check_lead_conversion(base_url=BASE_URL):
    """Create a lead, advance it to conversion and make sure a second advance reuses the deal."""
    sample_lead = {
        "first_name": "Smoke",
        "last_name": "Check",
        "email": "smoke.check@example.com",
        "source": "smoke",
    }

    try:
        response = requests.post(f"{base_url}/leads", json=sample_lead, timeout=10)
        if response.status_code != 200:
            print(f"❌ Lead creation failed: {response.status_code} {response.text}")
            return None
        lead_id = response.json()["id"]

        move = None
        for _ in range(3):
            response = requests.post(f"{base_url}/leads/{lead_id}/advance", timeout=30)
            if response.status_code != 200:
                print(f"❌ Lead advance failed: {response.status_code} {response.text}")
                return None
            move = response.json()

        if not move or not move.get("deal"):
            print(f"❌ Lead did not convert: {move}")
            return None
        deal_id = move["deal"]["id"]

        response = requests.post(f"{base_url}/leads/{lead_id}/advance", timeout=30)
        again = response.json()
        if again.get("deal", {}).get("id") != deal_id or again.get("deal_created"):
            print(f"❌ Repeated conversion created a second deal: {again}")
            return None

        print(f"✅ Lead {lead_id} converted to deal {deal_id}")
        return deal_id

    except requests.exceptions.RequestException as e:
        print(f"❌ Lead conversion error: {e}")
        return None


def check_deal_won(deal_id, base_url=BASE_URL):
    """Win the deal twice; the second call must return the same project."""
    try:
        requests.patch(f"{base_url}/deals/{deal_id}/case-type", json={"case_type": "Spouse Visa"}, timeout=10)
        requests.patch(f"{base_url}/deals/{deal_id}/quote", json={"amount": 10000}, timeout=10)

        first = requests.post(f"{base_url}/deals/{deal_id}/won", json={"confirmed": True}, timeout=30)
        second = requests.post(f"{base_url}/deals/{deal_id}/won", json={"confirmed": True}, timeout=30)
        if first.status_code != 200 or second.status_code != 200:
            print(f"❌ Mark won failed: {first.status_code} / {second.status_code}")
            return False

        project_id = first.json()["project"]["id"]
        if second.json()["project"]["id"] != project_id or second.json()["project_created"]:
            print(f"❌ Second mark won opened another project: {second.json()}")
            return False

        checklist = requests.get(f"{base_url}/projects/{project_id}/checklist", timeout=10).json()
        print(f"✅ Deal {deal_id} won, project {project_id} with {len(checklist['items'])} checklist items")
        return True

    except requests.exceptions.RequestException as e:
        print(f"❌ Mark won error: {e}")
        return False


def check_stats_and_forecast(base_url=BASE_URL):
    """Read the pipeline aggregates."""
    try:
        stats = requests.get(f"{base_url}/deals/stats", timeout=10)
        forecast = requests.get(f"{base_url}/forecast", params={"granularity": "month"}, timeout=10)
        if stats.status_code == 200 and forecast.status_code == 200:
            print(f"✅ Stats: {stats.json()}")
            print(f"✅ Forecast total: {forecast.json()['total']}")
            return True
        print(f"❌ Stats/forecast failed: {stats.status_code} / {forecast.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Stats/forecast error: {e}")
        return False


def main():
    """Run all checks."""
    print("🚀 Smoke checking Case Lifecycle Engine")
    print("=" * 50)

    # Wait for app to start
    print("⏳ Waiting for application to start...")
    time.sleep(5)

    passed = 0
    total = 4

    if check_health():
        passed += 1

    deal_id = check_lead_conversion()
    if deal_id:
        passed += 1
        if check_deal_won(deal_id):
            passed += 1

    if check_stats_and_forecast():
        passed += 1

    print("\n" + "=" * 50)
    print(f"📊 Results: {passed}/{total} checks passed")

    if passed == total:
        print("🎉 All checks passed!")
        return 0
    print("⚠️  Some checks failed. Check the application logs for details.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
