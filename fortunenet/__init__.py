"""
fortunenet — nonce-authenticated fortune delivery over UDP.

Three programs:
- auth server:    issues a nonce per client address, checks MD5(varint(nonce + secret)),
                  then asks the content server for an access grant.
- content server: mints access tokens over a private TCP control channel and serves
                  the fortune to the address the grant was issued for.
- client:         probe -> hash -> grant -> fortune, strictly in sequence.

Each service owns its own session table; nothing is shared between them except
the GetAccessGrant control call. Set FORTUNENET_CONTROL_KEY on both servers to
HMAC-sign that call.
"""
__all__ = ["client", "config", "crypto", "framing", "handoff", "messages", "node", "run_node", "sessions"]
