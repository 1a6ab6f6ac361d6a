"""kestrel: a streaming coding-agent runtime with budgeted context and gated tools."""
