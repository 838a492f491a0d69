import logging
from typing import Any, Dict, Optional

import httpx


class RemoteSignerError(RuntimeError):
    pass


class HttpRemoteSigner:
    """
    Remote signing boundary. Keys never live here: the signer service signs
    for ``owner_identity`` and broadcasts, returning the transaction hash.
    Error text is passed through untouched; it may carry the hash of a
    transaction that was broadcast anyway.
    """

    def __init__(self, cfg, logger: logging.Logger, client: Optional[httpx.AsyncClient] = None):
        self.url = cfg.execution.signer_url
        self.logger = logger
        headers = {"Accept": "application/json"}
        if cfg.execution.signer_api_key:
            headers["Authorization"] = f"Bearer {cfg.execution.signer_api_key}"
        self.client = client or httpx.AsyncClient(timeout=cfg.execution.signer_timeout_sec, headers=headers)

    async def sign_and_send(self, owner_identity: str, unsigned_tx: Dict[str, Any], chain: str) -> str:
        payload = {"ownerIdentity": owner_identity, "chain": chain, "transaction": unsigned_tx}
        r = await self.client.post(self.url, json=payload)
        if r.status_code >= 400:
            raise RemoteSignerError(f"signer error ({r.status_code}): {r.text[:500]}")
        data = r.json()
        tx_hash = data.get("hash") or data.get("txHash") or (data.get("data") or {}).get("hash")
        if not tx_hash:
            raise RemoteSignerError(f"signer response without hash: {str(data)[:500]}")
        return tx_hash

    async def close(self):
        await self.client.aclose()
