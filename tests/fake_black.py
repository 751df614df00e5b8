"""Stand-in for black used by the pipeline tests.

Reads stdin, strips trailing whitespace from every line and turns single
quotes into double quotes. Flags:

    --fail    print a black-style parse error on stderr and exit 123
    --sleep   sleep for 20 seconds before doing anything
    --argv    write the received argv (one per line) instead of formatting
"""

import sys
import time

args = sys.argv[1:]

if "--sleep" in args:
    time.sleep(20)

source = sys.stdin.buffer.read()

if "--fail" in args:
    sys.stderr.write("error: cannot format -: Cannot parse: 1:4: x = (\n")
    sys.stderr.flush()
    sys.exit(123)

if "--argv" in args:
    sys.stdout.write("\n".join(args) + "\n")
    sys.exit(0)

lines = source.split(b"\n")
formatted = b"\n".join(line.rstrip() for line in lines).replace(b"'", b'"')
sys.stdout.buffer.write(formatted)
sys.exit(0)
