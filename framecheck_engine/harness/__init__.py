"""Socket harness: wire protocol, server, client and capture boundary."""
