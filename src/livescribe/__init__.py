"""
livescribe - live audio transcription

Captures microphone and system audio during a session and turns it into a
stream of timestamped transcript lines, using a local Whisper model first and
falling back to a streaming recognizer, then manual mode.
"""

__version__ = "0.3.0"
