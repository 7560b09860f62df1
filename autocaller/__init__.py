"""
AI Outbound Call Orchestrator

Vonage Voice API と言語モデルを使用した自動発信・会話システム
"""

__version__ = "0.1.0"

from autocaller.config import Config, ConfigurationError

__all__ = ["Config", "ConfigurationError"]
