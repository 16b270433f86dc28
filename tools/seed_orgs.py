import argparse, json, secrets
from pathlib import Path
from ca_service.config import DB_PATH
from ca_service.db import ConsentRegistry

DEMO_ORGS = [
    {"org_code": "ORG0000001", "name": "Demo Bank", "org_type": "01", "industry": "bank",
     "serial_num": "0001", "auth_type": "01", "op_type": "I"},
    {"org_code": "ORG0000002", "name": "Demo Card", "org_type": "01", "industry": "card",
     "serial_num": "0002", "auth_type": "01", "op_type": "I"},
]

def main():
    ap = argparse.ArgumentParser(description="Seed organizations and one OAuth client per organization")
    ap.add_argument("--db", default=DB_PATH)
    ap.add_argument("--orgs", help="JSON file with a list of organizations (defaults to demo orgs)")
    ap.add_argument("--reset", action="store_true", help="Clear every table first")
    args = ap.parse_args()

    orgs = json.loads(Path(args.orgs).read_text(encoding="utf-8")) if args.orgs else DEMO_ORGS

    registry = ConsentRegistry(args.db)
    registry.open()
    if args.reset:
        registry.reset()

    clients = []
    for org in orgs:
        registry.add_organization(org)
        client_id = f"client-{org['org_code'].lower()}"
        client_secret = secrets.token_urlsafe(24)
        registry.add_client(client_id, client_secret, org["org_code"])
        clients.append({"org_code": org["org_code"], "client_id": client_id, "client_secret": client_secret})
    registry.close()

    print(json.dumps(clients, indent=2))

if __name__ == "__main__":
    main()
