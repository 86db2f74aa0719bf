"""
Plex — clients for the two Plex HTTP surfaces the widget talks to.

The media server reports sessions (what is playing where); the player on
port 3005 accepts remote-control commands.  Neither client keeps playback
state of its own.

  session.py   — SessionClient: /status/sessions + album art
  commands.py  — PlayerCommandDispatcher: play/pause/skipNext/skipPrevious
"""
