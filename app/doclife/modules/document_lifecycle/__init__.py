"""
Document lifecycle and supersession.

Documents are evidence files (identity, address, income, company papers)
attached to an owner. For every (tenant, owner, type) slot at most one
document is active; replacing it goes through supersession, which keeps the
old row and links it to its successor. Consumers such as a submitted
application freeze the documents that were true at a point in time through
USAGE relations, which later supersessions never touch.

Modules:
- models: Document and DocumentRelation tables, type/status enums
- store: create, review, activate/deactivate, active-set queries
- chain: supersede and lineage traversal
- relations: ownership/usage/reference links and coverage checks
- snapshot: point-in-time USAGE freezing
- history: per-type history, valid-at queries, timelines
"""
