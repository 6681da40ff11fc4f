"""
Sheska - community Discord bot with a persistent post scheduler.

Core Components:

- **Scheduler**: Persists announcements, re-arms them after a restart and
  delivers them at their due time (Discord webhooks, X posts), recording
  whether each was sent or failed
- **Registry**: SQLite store of record for every scheduled post
- **Scheduler cog**: Synchronizes pending posts when the bot is ready and
  reports failures in a logger channel

Usage:
    from sheska.main import main
    main()
"""
