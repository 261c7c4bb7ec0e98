import sys
import datetime as _dt
import multiprocessing
from loguru import logger
from pydantic import ValidationError

from buckets import calculate_base_plan
from config import ScenarioConfig, ConfigurationError, load_config_from_json
from optimizer import compare_strategies
from plotting import plot_bucket_balances, plot_portfolio_projection, plot_strategy_comparison
from simulation import records_to_dataframe, run_simulation
from social_security import calculate_ss_analysis, calculate_ss_partner_analysis
from utils import _generate_seed_from_timestamp, log_input_parameters, log_simulation_results


def main():
    """
    Main execution entry point.

    Loads a scenario, builds the bucket plan, runs the deterministic
    projection, the Monte Carlo harness, the allocation comparison and the
    Social Security analyses, and logs the results.
    """
    current_timestamp_str = _dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    log_filename = f"bucket_plan_log_{current_timestamp_str}.log"

    # Configure loguru
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level="INFO",
        colorize=True,
    )
    logger.add(
        log_filename,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        level="INFO",
        rotation="10 MB",
    )

    logger.info(f"Logging initialized. Log file: {log_filename}")

    if len(sys.argv) > 1:
        json_filename = sys.argv[1]
    else:
        json_filename = "scenario.json"
        logger.info(
            f"No scenario file specified via argument. Defaulting to '{json_filename}'"
        )

    logger.info(f"Loading scenario from: {json_filename}")
    try:
        config = ScenarioConfig(**load_config_from_json(json_filename))
        logger.info(
            f"Scenario '{config.nickname}' loaded and validated successfully."
        )
    except ConfigurationError as e:
        logger.error(f"Configuration file error: {e}")
        return
    except ValidationError as e:
        logger.error(f"Configuration validation error: {e}")
        return

    log_input_parameters(config)

    # One seed for the whole run so results can be reproduced from the log.
    seed = config.seed if config.seed is not None else _generate_seed_from_timestamp()
    logger.info(f"Random seed for this run: {seed}")

    plan = calculate_base_plan(config.inputs, config.assumptions, config.client)

    projection = run_simulation(
        plan,
        config.assumptions,
        config.inputs,
        rebalance_freq=config.rebalance_freq,
        is_monte_carlo=False,
        rebalance_policy=config.rebalance_policy,
    )
    monte_carlo = run_simulation(
        plan,
        config.assumptions,
        config.inputs,
        rebalance_freq=config.rebalance_freq,
        is_monte_carlo=True,
        seed=seed,
        iterations=config.monte_carlo_iterations,
        num_processes=config.num_processes or 1,
        rebalance_policy=config.rebalance_policy,
    )

    optimizer_results = compare_strategies(
        config.inputs,
        config.assumptions,
        config.client,
        base_plan=plan,
        rebalance_freq=config.effective_optimizer_rebalance_freq,
        seed=seed,
        iterations=config.monte_carlo_iterations,
        num_processes=config.num_processes or 1,
        rebalance_policy=config.rebalance_policy,
    )

    ss_analysis = calculate_ss_analysis(
        config.inputs, config.client, config.assumptions, config.target_max_portfolio_age
    )
    ss_partner_analysis = calculate_ss_partner_analysis(
        config.inputs,
        config.client,
        config.assumptions,
        config.target_max_portfolio_age,
        client_winner=ss_analysis.winner,
    )

    projection_df = records_to_dataframe(projection)
    log_simulation_results(
        config,
        plan,
        projection_df,
        monte_carlo,
        optimizer_results=optimizer_results,
        ss_analysis=ss_analysis,
        ss_partner_analysis=ss_partner_analysis,
    )

    safe_nickname = "".join(
        c if c.isalnum() or c in ["_", "-"] else "_" for c in config.nickname
    )
    plot_file_base = f"bucket_plan_{safe_nickname}_{current_timestamp_str}"
    plot_portfolio_projection(projection_df, monte_carlo, config, f"{plot_file_base}_PROJ.png")
    plot_bucket_balances(projection_df, config, f"{plot_file_base}_BUCKETS.png")
    plot_strategy_comparison(optimizer_results, config, f"{plot_file_base}_STRATEGIES.png")

    logger.info(
        f"--- Main execution finished for scenario '{config.nickname}'. Outputs in current directory. Log: {log_filename} ---"
    )


if __name__ == "__main__":
    multiprocessing.freeze_support()
    main()
