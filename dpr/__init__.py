"""Docker Proxy Reconciler (DPR).

Single-node control-plane process that keeps an nginx reverse proxy's routing
configuration in line with the containers running on a managed docker network:
 - watches container start/die events
 - rebuilds the full route table from container labels on every event
 - renders upstream + location artifacts, syntax-checks them, and only then
   swaps them in and gracefully reloads the proxy
 - records every reconciliation attempt in an append-only audit log
"""
