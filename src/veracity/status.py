import re

STATUS_TIMEOUT = 30

# Matches "Connected" and "connected" but not "Disconnected".
CONNECTED = re.compile(r"\b[Cc]onnected\b")


def check_connection_status(client, target):
    """Ask the NetBird agent on `target` whether it joined the network."""
    result = client.run_command(
        target, "cmd.run", ["netbird status"], timeout=STATUS_TIMEOUT
    )
    if not result.success:
        return {"connected": False, "status": None, "error": result.error}
    text = result.output or ""
    return {
        "connected": bool(CONNECTED.search(text)),
        "status": text,
        "error": None,
    }
