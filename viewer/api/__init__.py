"""
HTTP/WebSocket control API for viewer sessions.
"""
