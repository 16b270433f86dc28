import argparse, json, requests
from mydata_ca.ids import new_api_tran_id

SIGN_TX_ID = "ORG0000001_CA00000001_20250212070857_000001"

def show(label, resp):
    print(f"{label}: {resp.status_code} {json.dumps(resp.json(), ensure_ascii=False)[:300]}")
    return resp.json()

def main():
    ap = argparse.ArgumentParser(description="Walk one consent through the CA, Support001 to IA002")
    ap.add_argument("--base", default="http://127.0.0.1:8000")
    ap.add_argument("--client-id", required=True)
    ap.add_argument("--client-secret", required=True)
    ap.add_argument("--attack-type", default="", help="Label every exchange in the API log")
    args = ap.parse_args()

    s = requests.Session()
    if args.attack_type:
        s.headers["attack-type"] = args.attack_type
    creds = {"grant_type": "client_credentials", "client_id": args.client_id, "client_secret": args.client_secret}

    manage = show("Support001", s.post(args.base + "/mgmts/oauth/token", data=dict(creds, scope="manage")))
    show("Support002", s.get(args.base + "/mgmts/orgs", headers={
        "Authorization": "Bearer " + manage["access_token"], "x-api-tran-id": new_api_tran_id()}))

    ca = show("IA101", s.post(args.base + "/oauth/token", data=dict(creds, scope="ca")))
    auth = {"Authorization": "Bearer " + ca["access_token"]}

    consent = "Share account list"
    issued = show("IA102", s.post(args.base + "/ca/sign_request", headers=auth, json={
        "sign_tx_id": SIGN_TX_ID,
        "user_ci": "ZGVtby11c2VyLWNp",
        "real_name": "Hong Gildong",
        "phone_num": "+821012345678",
        "request_title": "Open banking consent",
        "device_code": "PC",
        "device_browser": "WB",
        "return_app_scheme_url": "mydata://auth",
        "consent_type": "0",
        "consent_cnt": 1,
        "consent_list": [{"consent_title": "Accounts", "consent": consent, "consent_len": len(consent)}],
    }))
    cert_tx_id = issued["cert_tx_id"]

    signed = show("IA103", s.post(args.base + "/ca/sign_result", headers=auth, json={
        "cert_tx_id": cert_tx_id, "sign_tx_id": SIGN_TX_ID}))["signed_consent_list"][0]

    show("IA104", s.post(args.base + "/ca/sign_verification", headers=auth, json={
        "cert_tx_id": cert_tx_id,
        "tx_id": signed["tx_id"],
        "signed_consent": signed["signed_consent"],
        "signed_consent_len": signed["signed_consent_len"],
        "consent": consent,
        "consent_type": "0",
        "consent_len": len(consent),
    }))

    show("IA002", s.post(args.base + "/bank/data_access", headers=auth, json={"tx_id": signed["tx_id"]}))

if __name__ == "__main__":
    main()
