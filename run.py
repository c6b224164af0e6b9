import asyncio
from datetime import datetime, timezone
import time

from dotenv import load_dotenv
import hydra
from hydra.utils import instantiate
from loguru import logger
from omegaconf import DictConfig, OmegaConf
import uvicorn

from genealogy.api.app import ApiConfig, create_app
from genealogy.database.factory import build_storage
from genealogy.database.rule_storage import RuleStorage
from genealogy.exceptions import ConfigurationError
from genealogy.registry.seed import SeedRuleLoader
from genealogy.service import GenealogyService
from genealogy.utils.logger_setup import setup_logger


async def run_server(cfg: DictConfig):
    start_time = time.time()

    logger.info("=" * 80)
    logger.info("Genealogy Decision Service")
    logger.info("=" * 80)
    logger.info(f"Start time: {datetime.now(timezone.utc).isoformat()}")

    storage: RuleStorage | None = None
    try:
        logger.info("Step 1/3: Initializing components...")
        try:
            storage = build_storage(**OmegaConf.to_container(cfg.storage, resolve=True))
        except ConfigurationError as e:
            logger.error(f"Storage not configured ({e}); decisions will not be recorded")

        decision_config = instantiate(cfg.decision, _convert_="all")
        api_config: ApiConfig = instantiate(cfg.api, _convert_="all")
        service = None
        if storage is not None:
            service = GenealogyService.from_configs(
                storage,
                selector=instantiate(cfg.selector, _convert_="all"),
                decision=decision_config,
                feedback=instantiate(cfg.feedback, _convert_="all"),
                evolution=instantiate(cfg.evolution, _convert_="all"),
            )
        if not api_config.api_token:
            logger.warning("API_TOKEN not set (token check disabled)")
        logger.info("Step 1/3: Complete")

        logger.info("Step 2/3: Seeding rule registry...")
        if storage is not None and cfg.seed.enabled:
            seed_rules = (
                OmegaConf.to_container(cfg.seed.rules, resolve=True)
                if cfg.seed.rules is not None
                else None
            )
            seeded = await SeedRuleLoader(seed_rules).load(storage)
            logger.info(f"Step 2/3: Seeded {len(seeded)} rule(s)")
        else:
            logger.info("Step 2/3: Skipped")

        logger.info("Step 3/3: Serving on {}:{}", cfg.server.host, cfg.server.port)
        app = create_app(
            service,
            api_config=api_config,
            decision_config=decision_config,
            close_storage=False,
        )
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=cfg.server.host,
                port=cfg.server.port,
                log_level=str(cfg.logging.level).lower(),
            )
        )
        await server.serve()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:  # pylint: disable=broad-except
        logger.error(f"Service failed: {e}")
        raise
    finally:
        logger.info("Starting cleanup...")
        if storage is not None:
            await storage.close()
        duration = time.time() - start_time
        logger.info(f"Total uptime: {duration:.2f} seconds ({duration / 3600:.2f} hours)")
        logger.info("=" * 80)


@hydra.main(version_base=None, config_path="config", config_name="config")
def main(cfg: DictConfig) -> None:
    """Main entrypoint with Hydra configuration management."""
    load_dotenv()

    log_file_path = setup_logger(
        log_dir=cfg.logging.log_dir,
        level=cfg.logging.level,
        rotation=cfg.logging.rotation,
        retention=cfg.logging.retention,
    )
    logger.info(f"Log file: {log_file_path}")
    asyncio.run(run_server(cfg))


if __name__ == "__main__":
    main()
