"""
Delivery Queue — Decouples message acceptance from delivery.

- The API PUBLISHES one delivery job per stored message
- Delivery workers CONSUME jobs, re-check the message, send, and mark it
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
