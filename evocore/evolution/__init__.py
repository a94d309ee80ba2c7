"""Evolution scheduling — turning observations into improvement work.

- TriggerQueue: bounded, priority-ordered, deduplicating trigger queue
- EvolutionDaemon: background drain with back-off on repeated rejections
- HarmonyController: composite health score that requests rebalancing
"""
