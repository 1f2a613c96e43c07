"""
Listen2Me - API Package
=======================

FastAPI application, gateway websocket routes and control endpoints.
"""
