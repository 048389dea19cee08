"""OAuth state tokens, authorization handshake and token refresh."""
