"""Text generation — Claude client, prompts and resumable streams."""
