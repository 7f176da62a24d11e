#!/usr/bin/env python3
"""
Brandgraph Synthetic Session Generator

Seeds a running Brandgraph Identity API with realistic visitor journeys:
1. Brands are upserted
2. Anonymous Braze/Amplitude sessions are identified
3. Some visitors log in (link-login by email, a few by phone)
4. Logged-in visitors get an internal web session stitched to their
   external sessions
5. Cross-brand shoppers repeat the journey on a second brand

Verify afterwards with:
  curl 'http://localhost:8000/identity/all-customers-activity?crossBrandOnly=true'
"""

import argparse
import random
import sys
import time
import uuid
from typing import Dict, List

import requests

# Configuration
API_URL = 'http://localhost:8000'

BRANDS = [
    {'id': 'northwind', 'name': 'Northwind Outfitters', 'slug': 'northwind'},
    {'id': 'contoso', 'name': 'Contoso Home', 'slug': 'contoso'},
    {'id': 'fabrikam', 'name': 'Fabrikam Beauty', 'slug': 'fabrikam'},
]

# Visitor personas
VISITOR_PERSONAS = {
    'window_shopper': {
        'weight': 0.40,
        'login_rate': 0.0,   # never identifies
        'brands': 1,
        'sessions_per_brand': (1, 3),
    },
    'single_brand_customer': {
        'weight': 0.35,
        'login_rate': 0.9,
        'brands': 1,
        'sessions_per_brand': (1, 4),
    },
    'cross_brand_loyalist': {
        'weight': 0.20,
        'login_rate': 1.0,
        'brands': 2,
        'sessions_per_brand': (2, 5),
    },
    'brand_hopper': {
        'weight': 0.05,
        'login_rate': 1.0,
        'brands': 3,
        'sessions_per_brand': (1, 2),
    },
}

PROVIDERS = ['braze', 'amplitude']


class SyntheticSessionGenerator:
    def __init__(self, api_url: str, dry_run: bool = False):
        self.api_url = api_url.rstrip('/')
        self.dry_run = dry_run
        self.http = requests.Session()
        self.calls = 0
        self.failures = 0

    def check_api(self, max_retries: int = 5) -> bool:
        """Wait for /health/ready to answer 200"""
        for attempt in range(max_retries):
            try:
                response = self.http.get(f"{self.api_url}/health/ready", timeout=3)
                if response.status_code == 200:
                    return True
            except requests.RequestException:
                pass
            if attempt < max_retries - 1:
                print(f"Waiting for Brandgraph API (attempt {attempt + 1}/{max_retries})...")
                time.sleep(2)
        return False

    def _post(self, path: str, payload: Dict) -> bool:
        self.calls += 1
        if self.dry_run:
            print(f"  POST {path} {payload}")
            return True
        try:
            response = self.http.post(f"{self.api_url}{path}", json=payload, timeout=10)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            self.failures += 1
            print(f"  Failed POST {path}: {e}")
            return False

    def seed_brands(self):
        for brand in BRANDS:
            self._post('/identity/brand', brand)

    def _pick_persona(self) -> Dict:
        names = list(VISITOR_PERSONAS)
        weights = [VISITOR_PERSONAS[n]['weight'] for n in names]
        return VISITOR_PERSONAS[random.choices(names, weights=weights)[0]]

    def generate_visitor(self, index: int):
        """One visitor journey across one or more brands"""
        persona = self._pick_persona()
        email = f"visitor{index:05d}@example.com"
        phone = f"+1415555{index % 10000:04d}"
        logs_in = random.random() < persona['login_rate']
        brands: List[Dict] = random.sample(BRANDS, persona['brands'])

        for brand in brands:
            low, high = persona['sessions_per_brand']
            for _ in range(random.randint(low, high)):
                provider = random.choice(PROVIDERS)
                external_id = f"{provider[:3]}-{uuid.uuid4().hex[:12]}"
                self._post('/identity/identify', {
                    'provider': provider,
                    'externalSessionId': external_id,
                    'brandId': brand['id'],
                })

                if not logs_in:
                    continue

                login = {
                    'provider': provider,
                    'externalSessionId': external_id,
                    'brandId': brand['id'],
                    'email': email,
                }
                # A few returning visitors also carry their phone number
                if random.random() < 0.2:
                    login['phone'] = phone
                self._post('/identity/link-login', login)

            if logs_in:
                self._post('/identity/link-internal-to-existing', {
                    'email': email,
                    'internalSessionId': f"web-{uuid.uuid4().hex[:16]}",
                    'brandId': brand['id'],
                })

    def run(self, visitors: int):
        print(f"Seeding {len(BRANDS)} brands and {visitors} visitors into {self.api_url}")
        if self.dry_run:
            print("--dry-run mode: requests are printed, not sent")
        print()

        self.seed_brands()
        for i in range(visitors):
            self.generate_visitor(i)
            if (i + 1) % 25 == 0:
                print(f"  {i + 1}/{visitors} visitors ({self.calls} calls, {self.failures} failures)")

        print()
        print(f"Done: {self.calls} calls, {self.failures} failures")


def main():
    parser = argparse.ArgumentParser(description='Seed Brandgraph with synthetic sessions')
    parser.add_argument('--api-url', default=API_URL, help='Brandgraph Identity API base URL')
    parser.add_argument('--visitors', type=int, default=100, help='Number of visitors to simulate')
    parser.add_argument('--seed', type=int, default=None, help='Random seed for reproducible runs')
    parser.add_argument('--dry-run', action='store_true', help='Print requests instead of sending them')
    args = parser.parse_args()

    if args.seed is not None:
        random.seed(args.seed)

    generator = SyntheticSessionGenerator(args.api_url, dry_run=args.dry_run)
    if not args.dry_run and not generator.check_api():
        print("Brandgraph API not available at", args.api_url)
        print("  Start it with: uvicorn brandgraph.main:app --port 8000")
        sys.exit(1)

    generator.run(args.visitors)


if __name__ == '__main__':
    main()
