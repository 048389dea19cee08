"""cgm-sync — Dexcom OAuth token lifecycle and glucose data synchronization.

Architecture
------------
1. **Vendor client** (`dexcom/client.py`) — OAuth grants and the v3 EGV API.
2. **OAuth** (`oauth/`) — state tokens, the authorization handshake and
   proactive token refresh.
3. **Rate limiter** (`ratelimit.py`) — one call budget shared by every user,
   guarded by a storage transaction.
4. **Synchronizer** (`sync/`) — window validation, sandbox adjustment and
   idempotent reading storage.
5. **Scheduler** (`scheduler/`) — the periodic sweep over all connected users.
6. **API** (`api/`) — FastAPI surface over :class:`~cgm_sync.service.DexcomService`.
"""

__version__ = "0.1.0"
