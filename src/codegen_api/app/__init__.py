"""Generation pipeline components: gateway, continuation, repair, fallback, ledger."""
