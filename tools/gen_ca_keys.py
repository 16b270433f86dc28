import os, json
from ca_service.config import CA_SIGNING_KEY_PATH
from mydata_ca.signing import ConsentSigner

signer = ConsentSigner.generate(kid=os.getenv("CA_KEY_ID", "ca-ed25519-1"))
signer.write_key_file(CA_SIGNING_KEY_PATH)

os.makedirs("trust", exist_ok=True)
with open("trust/ca_public_key.json","w",encoding="utf-8") as f:
    json.dump({"kid": signer.kid, "public_key_b64": signer.public_key_b64}, f, indent=2)

print(f"Generated CA signing key {signer.kid} -> {CA_SIGNING_KEY_PATH}")
