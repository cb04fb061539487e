import os

# main builds a module-level app on import; keep it off the network
os.environ.setdefault("USE_IN_MEMORY_STORE", "true")
