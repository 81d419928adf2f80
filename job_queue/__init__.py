"""
Stream delivery — promoted timers travel through one stream per partition.

- Promotion scheduler PUBLISHES due timers to their partition stream
- Worker pool CONSUMES them through a shared consumer group
- Supports Redis Streams (production) and an in-memory broker (dev, tests)
"""
