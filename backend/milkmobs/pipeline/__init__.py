"""
Campaign video analysis pipeline.

Turns an uploaded video into a validated, embedded, community-assigned record:

1. Mark processing: the item shows as processing right away
2. Parallel analysis: participation judgment and embedding, both required
3. Merge and persist: one combined record written to the store, embedding indexed
4. Validate: weighted evidence fusion into a pass/fail verdict with reasons
5. Cluster assignment: join a similar community or name a new one
6. Emit event: completion notice to subscribers

Batch rebuilds re-cluster the whole validated corpus and converge community
member counts.
"""

__version__ = "1.0.0"
