"""Core gateway components: normalizer, policy engine, tokens, rate limiting."""
