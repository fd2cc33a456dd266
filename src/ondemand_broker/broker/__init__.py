"""Stateless control plane driving service instances through a deployment director.

Nothing about an in-flight operation is stored locally. Each triggering call
returns a continuation token, and every last-operation poll rebuilds the
operation's position from the director's task history for that token.
"""
