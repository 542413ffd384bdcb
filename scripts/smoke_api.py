#!/usr/bin/env python3
"""
Manual smoke run against a live caregate API.

Run the API server first:   python -m caregate.api.app
Then run this:              python scripts/smoke_api.py [api_key]
"""

import json
import os
import sys

import requests

BASE_URL = os.getenv("CAREGATE_URL", "http://localhost:8000")


def show(response):
    print(f"Status Code: {response.status_code}")
    print(f"Response: {json.dumps(response.json(), indent=2)}")


def banner(title):
    print("\n" + "=" * 50)
    print(f"CHECK: {title}")
    print("=" * 50)


def check_health():
    banner("Health")
    response = requests.get(f"{BASE_URL}/health")
    show(response)
    return response.status_code == 200


def check_login_invalid():
    banner("Login with invalid key")
    response = requests.post(f"{BASE_URL}/api/auth/login", json={"api_key": "cg_invalid"})
    show(response)
    return response.status_code == 401


def check_me_without_token():
    banner("Profile without token")
    response = requests.get(f"{BASE_URL}/api/me")
    show(response)
    return response.status_code == 401


def login(api_key):
    banner("Login")
    response = requests.post(f"{BASE_URL}/api/auth/login", json={"api_key": api_key})
    show(response)
    if response.status_code == 200:
        return response.json().get("token")
    return None


def check_me(token):
    banner("Profile and effective capabilities")
    response = requests.get(f"{BASE_URL}/api/me", headers={"Authorization": f"Bearer {token}"})
    show(response)
    return response.status_code == 200


def check_bogus_transition(token):
    banner("Illegal status string is refused")
    response = requests.post(
        f"{BASE_URL}/api/prescriptions/does-not-exist/status",
        headers={"Authorization": f"Bearer {token}"},
        json={"status": "hacked_status"},
    )
    show(response)
    return response.status_code in (403, 404)


def check_logout(token):
    banner("Logout")
    response = requests.post(f"{BASE_URL}/api/auth/logout", headers={"Authorization": f"Bearer {token}"})
    show(response)
    return response.status_code == 200


def check_token_dead(token):
    banner("Token rejected after logout")
    response = requests.get(f"{BASE_URL}/api/me", headers={"Authorization": f"Bearer {token}"})
    show(response)
    return response.status_code == 401


def main():
    print("=" * 50)
    print("caregate API smoke run")
    print("=" * 50)
    print(f"Base URL: {BASE_URL}")

    api_key = sys.argv[1] if len(sys.argv) > 1 else input("Enter an API key: ").strip()
    if not api_key:
        print("ERROR: API key is required")
        return 1

    results = {}
    try:
        results["Health"] = check_health()
        results["Login Invalid"] = check_login_invalid()
        results["Profile Without Token"] = check_me_without_token()

        token = login(api_key)
        results["Login Valid"] = token is not None
        if token:
            results["Profile"] = check_me(token)
            results["Bogus Transition"] = check_bogus_transition(token)
            results["Logout"] = check_logout(token)
            results["Token Dead"] = check_token_dead(token)
        else:
            print("\nERROR: Could not login. Remaining checks skipped.")
    except requests.RequestException as e:
        print(f"\nERROR: {e}")

    print("\n" + "=" * 50)
    print("SUMMARY")
    print("=" * 50)
    for name, ok in results.items():
        print(f"{'✓ PASS' if ok else '✗ FAIL'}: {name}")
    passed = sum(1 for ok in results.values() if ok)
    print(f"\nTotal: {passed}/{len(results)} checks passed")
    return 0 if passed == len(results) else 1


if __name__ == "__main__":
    sys.exit(main())
