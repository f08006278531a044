"""Persistent job queue, task chains and the polling scheduler.

Jobs live in the same SQLite file as the rest of the photo manager, so any
process that opens it can enqueue or claim work without a separate broker.
Claims are conditional UPDATEs with a heartbeat lease; lanes and task chains
are plain columns on the same table.
"""
