"""
LLM Module

LLM abstraction layer with multi-provider support.

This module provides:
- Unified BaseLLMProvider interface
- OpenAI-compatible providers (OpenAI, OpenRouter, Ollama, DeepSeek)
- A scripted provider for offline runs and tests
- REPL agent prompt templates
- Retry logic and token usage tracking
"""

__version__ = "0.1.0"
