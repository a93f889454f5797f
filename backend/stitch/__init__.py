"""Stitch execution engine package.

Modules:
- graph / paths / resolver / safe_eval: flow model and expression handling
- protocol / dispatcher: worker webhook contract and outbound delivery
- run_state / store: persisted run, entity and flow access
- runner / fan: edge-walking dispatch, splitter fan-out and collector fan-in
- movement: entity position state machine and journey events
- ingest: third-party webhook ingestion gateway
"""
