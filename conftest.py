import os

# Select TestConfig (in-memory database, no relays or Redis) before config is imported
os.environ.setdefault("EXPLORER_ENV", "test")
