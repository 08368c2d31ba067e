"""
Document management for the precast ERP.

- Every document has exactly one ACTIVE version; a new upload supersedes it
- Approvals run a workflow template against one document version at a time
- Shares hand out unguessable links; reads and share hits go to an access log
- Meaningful changes are recorded to the append-only audit trail
"""
