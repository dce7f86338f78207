"""Memory facade, request orchestration and callback delivery."""
