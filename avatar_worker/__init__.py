"""
Avatar scene worker: FastAPI service + Redis queue consumers that run the
scene generation pipeline (speech → image → video → lip-sync).
"""
