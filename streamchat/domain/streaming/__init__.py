 # This module turns upstream streams into one client-visible turn

#  upstream stream 1            upstream stream 2 (continuation)
# +------------------+         +------------------+
# | text deltas      |         | text deltas      |
# | function call    |-------->| annotations      |
# | arguments done   | tool    | response done    |
# +------------------+ result  +------------------+
#          |                            |
#          v                            v
# +-------------------------------------------------+
# | content ... functionCall functionCallResult     |
# | content ... finalContent                        |
# +-------------------------------------------------+
#          one outward stream, one terminal event
