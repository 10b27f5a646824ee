"""
testgen-backend - HTTP API

App factory, routes, middleware and the uvicorn listener.
"""
