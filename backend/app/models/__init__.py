from app.models.nonce import AuthNonce
