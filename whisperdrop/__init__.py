"""WhisperDrop — ephemeral, encrypted messaging and file transfer on the LAN."""

__version__ = "0.1.0"
