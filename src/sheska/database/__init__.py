"""
Database package for Sheska.

Public API:
    - db_connection: module-level ConnectionManager used by the bot
    - ConnectionManager: single aiosqlite connection with serialised writes
    - SchemaManager: table and index creation
"""
