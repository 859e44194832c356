"""Constants shared by the install pipeline."""

BLOCK_SIZE = 8192  # 8KB block size for file copies and stream chunks
MAX_BODY_SIZE = 10 * 1024 * 1024  # 10MB ceiling on request payloads
MAX_STDERR_BYTES = 64 * 1024  # Tail of installer stderr kept for diagnostics
INSTALL_TIMEOUT = 600  # Seconds before a hung installer is killed
MAX_CONCURRENT_INSTALLS = 4
