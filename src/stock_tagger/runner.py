"""Image task runner: generate, optionally embed, and record the outcome for one image."""

from pathlib import Path

from loguru import logger

from stock_tagger.ai import GenerationRequest, MetadataGenerator
from stock_tagger.cancellation import CancellationToken
from stock_tagger.config import BatchConfig
from stock_tagger.embedder import EmbedPayload, TagEmbedder
from stock_tagger.state import GeneratedMetadata, ImageStatus, ProgressStore
from stock_tagger.templates import TemplateRegistry


def embed_payload(metadata: GeneratedMetadata, config: BatchConfig) -> EmbedPayload:
    """Only the fields switched on in ``config.embed_fields`` are passed to the embedder."""
    fields = config.embed_fields
    return EmbedPayload(
        title=metadata.title if fields.title else None,
        description=metadata.description if fields.description else None,
        keywords=metadata.keywords if fields.keywords else None,
    )


class ImageTaskRunner:
    """
    Processes a single image of a folder.

    Generation success alone decides the outcome: a failed embed is logged and the image
    still completes. Nothing is retried here; failed images are left for a caller-initiated
    retry.
    """

    def __init__(
        self,
        store: ProgressStore,
        generator: MetadataGenerator,
        embedder: TagEmbedder | None,
        token: CancellationToken,
        templates: TemplateRegistry | None = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.embedder = embedder
        self.token = token
        self.templates = templates or TemplateRegistry()

    def _template_for(self, folder_id: str) -> str | None:
        template_id = self.store.folder(folder_id).assigned_template_id
        if not template_id:
            return None
        template = self.templates.get(template_id)
        if template is None:
            logger.warning("template_not_found", template=template_id)
            return None
        return template.template

    async def run(
        self,
        folder_id: str,
        file_name: str,
        file_path: Path,
        config: BatchConfig,
    ) -> ImageStatus | None:
        """
        Run the full workflow for one image.

        Returns:
            The terminal status, or None when cancellation was observed before starting.

        """
        if self.token.cancelled:
            return None

        with logger.contextualize(file=file_name):
            self.store.mark_image_processing(folder_id, file_name)
            image = self.store.image(folder_id, file_name)
            request = GenerationRequest.from_config(
                file_path,
                config,
                template=self._template_for(folder_id),
                custom_instruction=image.custom_instruction,
            )

            try:
                metadata = await self.generator.generate(request)
            except Exception as exc:  # noqa: BLE001
                message = str(exc) or type(exc).__name__
                logger.error("metadata_generation_failed", error=message)
                self.store.fail_image(folder_id, file_name, message)
                return "error"

            if config.embed_enabled and self.embedder is not None:
                await self._embed(file_path, metadata, config)

            self.store.complete_image(folder_id, file_name, metadata)
            logger.info("image_completed", keywords=len(metadata.keywords))
            return "completed"

    async def _embed(self, file_path: Path, metadata: GeneratedMetadata, config: BatchConfig) -> None:
        assert self.embedder is not None  # noqa: S101
        self.store.set_current_stage("metadata_embedding")
        try:
            result = await self.embedder.embed(file_path, embed_payload(metadata, config))
        except Exception as exc:  # noqa: BLE001
            logger.opt(exception=exc).warning("metadata_embed_failed", error=str(exc))
        else:
            if result.success:
                logger.debug("metadata_embedded", message=result.message)
            else:
                logger.warning("metadata_embed_failed", error=result.message)
        finally:
            self.store.set_current_stage("ai_generation")
