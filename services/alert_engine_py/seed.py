"""
Seed the database with demo alerts for a demo user.  This script runs
inside the alert_engine container which already has the market_engine
package installed.  It can be invoked via docker compose exec:

    docker compose exec alert_engine python seed.py
"""
import os

from market_engine.storage import SqlAlertStore

DEMO_ALERTS = [
    {"coin_id": "bitcoin", "coin_symbol": "btc", "kind": "price_above", "target_price": 60000.0},
    {"coin_id": "bitcoin", "coin_symbol": "btc", "kind": "price_below", "target_price": 58000.0},
    {"coin_id": "ethereum", "coin_symbol": "eth", "kind": "percent_change", "percent_change": 5.0},
    {"coin_id": "ethereum", "coin_symbol": "eth", "kind": "technical_signal", "technical_signal": "rsi_oversold"},
]


def seed(store: SqlAlertStore, owner_id: str) -> int:
    existing = {
        (a.coin_id, a.kind.value, a.target_price, a.percent_change,
         a.technical_signal.value if a.technical_signal else None)
        for a in store.list_for_owner(owner_id)
    }
    created = 0
    for fields in DEMO_ALERTS:
        key = (fields["coin_id"], fields["kind"], fields.get("target_price"),
               fields.get("percent_change"), fields.get("technical_signal"))
        if key in existing:
            continue
        store.create(owner_id, **fields)
        print(f"Added {fields['kind']} alert for {fields['coin_id']}")
        created += 1
    return created


def main():
    owner_id = os.environ.get("DEMO_EMAIL", "demo@example.com")
    store = SqlAlertStore(os.environ.get("DATABASE_URL", "sqlite:///alerts.db"))
    seed(store, owner_id)
    print("Seeding complete")


if __name__ == "__main__":
    main()
