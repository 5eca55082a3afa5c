"""Real-time message core for Roomcast.

Durable per-room message logs with strict ordering, live fan-out over
WebSocket, catch-up after reconnect, debounced presence and direct rooms.
"""
