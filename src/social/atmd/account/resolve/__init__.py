"""
Identity Resolution

Resolves AT Protocol handles and DIDs to the data the login flow needs: the DID, the
handle the DID document claims, and the PDS hosting the account.

1. Handles resolve to a DID through DNS (``_atproto.{handle}`` TXT) or HTTPS
   (``/.well-known/atproto-did``), DNS preferred
2. DIDs resolve through the PLC directory (did:plc) or ``did.json`` (did:web)
3. A handle is only accepted when the DID document claims it back
"""
