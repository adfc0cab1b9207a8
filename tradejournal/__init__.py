"""
Trade journal backend.

- `journal_service`: HTTP API that turns trade mutations into events
- `messaging`: the trade-event relay (codec, producer, consumer)
- `persistence`: the Trade Store the consumer applies events to
"""
