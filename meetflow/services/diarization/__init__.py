import logging
from typing import Optional

from meetflow.services.diarization.providers.assemblyai_provider import AssemblyAIProvider
from meetflow.services.diarization.providers.base import (
    DiarizationConfig,
    DiarizationProvider,
    DiarizationResult,
    Utterance,
    parse_diarization_config,
)
from meetflow.services.diarization.providers.null_provider import NullProvider
from meetflow.services.resilience import ResilientInvoker


class DiarizationError(RuntimeError):
    pass


class DiarizationService:
    """Selects and runs the configured speaker diarization provider.

    Providers:
    - assemblyai: remote async job with ``speaker_labels`` enabled
    - none: disabled/null provider
    """

    def __init__(
        self,
        config: DiarizationConfig,
        invoker: ResilientInvoker,
        language: Optional[str] = "en",
        provider: Optional[DiarizationProvider] = None,
    ) -> None:
        self._config = config
        self._invoker = invoker
        self._language = language
        self._logger = logging.getLogger("meetflow.diarization")
        self._provider = provider

    def is_enabled(self) -> bool:
        return bool(self._config.enabled)

    def get_provider_name(self) -> str:
        return (self._config.provider or "none").lower()

    def _load_provider(self) -> DiarizationProvider:
        if self._provider is not None:
            return self._provider
        provider_name = self.get_provider_name()
        if provider_name == "none":
            self._provider = NullProvider()
            return self._provider
        if provider_name == "assemblyai":
            self._provider = AssemblyAIProvider(
                api_key=self._config.api_key,
                invoker=self._invoker,
                base_url=self._config.base_url,
                language=self._language,
                min_speakers=self._config.min_speakers,
                max_speakers=self._config.max_speakers,
            )
            return self._provider
        raise DiarizationError(f"Unsupported diarization provider: {provider_name}")

    def run(self, audio_path: str) -> DiarizationResult:
        if not self._config.enabled:
            return DiarizationResult(utterances=[])
        provider = self._load_provider()
        try:
            return provider.diarize(audio_path)
        except Exception as exc:
            self._logger.warning("Diarization failed (%s): %s", self.get_provider_name(), exc)
            raise


__all__ = [
    "AssemblyAIProvider",
    "DiarizationConfig",
    "DiarizationError",
    "DiarizationProvider",
    "DiarizationResult",
    "DiarizationService",
    "NullProvider",
    "Utterance",
    "parse_diarization_config",
]
