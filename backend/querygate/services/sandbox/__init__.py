"""
Process-isolated execution of user-submitted scripts.

- runner: host side (spawn, timeout, IPC decoding, result shaping)
- child / postgres_script / mongo_script: what runs inside the child
"""
