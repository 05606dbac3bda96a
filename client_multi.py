"""
Interactive TCP client for the word sequence server.

This client keeps one connection open and sends every line the user types.
Type 'quit' (or press Ctrl-D) to end the session: the client sends byte 4
(EOT), which makes the server close the connection.

- Each line is one request; the server answers `<word> <counter>`.
- A second number on the line (e.g. `hello 100`) resets the shared counter.
- Lines without any letters, digits or `_` get no answer.
"""

import argparse
import socket

EOT = b"\x04"


def main():
    """Open one TCP connection and serve user input until 'quit'."""
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=4567)
    ap.add_argument("--timeout", type=float, default=1.0, help="Seconds to wait per response.")
    args = ap.parse_args()

    print("(client) connecting...")
    with socket.create_connection((args.host, args.port)) as s:
        s.settimeout(args.timeout)
        f = s.makefile('rb', buffering=0)
        print("(client) connected. Type words. Type 'quit' to exit.")
        while True:
            try:
                q = input("> ").strip()
            except (EOFError, KeyboardInterrupt):
                q = "quit"
            if not q:
                continue
            if q.lower() == "quit":
                s.sendall(EOT)
                break
            s.sendall((q + "\n").encode('utf-8'))
            try:
                line = f.readline()
            except socket.timeout:
                print("(client) no response")
                continue
            if not line:
                print("(client) server closed the connection")
                break
            print(line.decode('utf-8', errors='replace').rstrip('\r\n'))
    print("(client) done.")


if __name__ == "__main__":
    main()
