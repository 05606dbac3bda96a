"""
Basic TCP client for the word sequence server.

This client opens one connection, sends each word given on the command line,
waits for the matching response line and prints it. It follows the server
protocol:

- We send the raw word (a newline is added; the server ignores it).
- The server answers `<word> <counter>` (or the reversed word).
- With --eot we send byte 4 at the end, which asks the server to close.

A chunk without any letters, digits or `_` gets no answer, so every read
has a timeout.
"""

import argparse
import socket

EOT = b"\x04"


def read_line(f) -> str | None:
    """Read one response line; return None on EOF or timeout."""
    try:
        line = f.readline()
    except socket.timeout:
        return None
    if not line:
        return None
    return line.decode('utf-8', errors='replace').rstrip('\r\n')


def main():
    """Parse CLI args, send the words one by one, print each response."""
    ap = argparse.ArgumentParser()
    ap.add_argument("words", nargs="+", help="Words to send, one request each.")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=4567)
    ap.add_argument("--timeout", type=float, default=2.0, help="Seconds to wait per response.")
    ap.add_argument("--eot", action="store_true", help="Send EOT (Ctrl-D) before closing.")
    args = ap.parse_args()

    with socket.create_connection((args.host, args.port), timeout=args.timeout) as s:
        f = s.makefile('rb', buffering=0)
        for w in args.words:
            s.sendall((w + "\n").encode('utf-8'))
            resp = read_line(f)
            if resp is None:
                print(f"(client) no response for {w!r}")
                continue
            print(resp)
        if args.eot:
            s.sendall(EOT)


if __name__ == "__main__":
    main()
