"""Clients of the remote filesystem manager and the resource server."""
