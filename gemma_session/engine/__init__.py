# Session engine
#
# This package turns a loaded Gemma model into a call-at-a-time session
# that returns only the model's reply.
#
# Key components:
#   - adapters/          Model-family specific adapters
#   - registry.py        Model types, weight formats and adapter lookup
#   - config.py          Configuration validation and generation settings
#   - prompt.py          Chat-template wrapping and tokenization
#   - turn_filter.py     Per-token reply extraction
#   - output_buffer.py   Capacity-checked copy into caller buffers
#   - session.py         Session construction, generate, count_tokens
