"""
TierStream Test Suite

Test Categories:
- unit/: Fast, isolated unit tests
- streaming/: Producer and consumer process tests against fake ffmpeg/ffplay scripts
- integration/: Control server and client over real sockets
"""
