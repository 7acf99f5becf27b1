"""Queue-and-retry engine for pledge submissions.

Two state strategies share one processor:

- ``WorkItemRepository`` keeps retry state in structured columns of
  ``work_items`` and claims batches with a conditional ``UPDATE``.
- ``OutboxRepository`` keeps retry state in the gift workflow's status
  trail and derives attempts/suppression by scanning sentinel events.

Both are adapted to the ``WorkItemStore`` protocol in ``stores.py`` and driven
by ``ItemProcessor`` under a per-item advisory lock. ``ProcessorHost`` owns
the polling cadence.
"""
