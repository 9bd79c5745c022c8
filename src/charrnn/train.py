"""Epoch / checkpoint driver.

This is the outer loop around `TrainingEngine.step`:

    running ──(epoch >= lr_decay_after)──> decaying ──> converged
        │                                      │
        └──────── NaN / loss explosion ────────┴──> aborted

Rules:
1) **One iteration = one minibatch.** iterations = max_epochs * ntrain, and
   epoch = i / ntrain is fractional.
2) **The carried state is reset at epoch boundaries** (the train split wraps
   around there) and on resume.
3) **Validate and checkpoint together**, every eval_every iterations and on the
   final one. A checkpoint always carries the loss history so far.
4) **Divergence is fatal, never retried.** The engine refuses to apply a NaN
   update; the driver aborts if loss exceeds explode_factor x the first loss.
   Checkpoints already written are left alone.

Resume appends to the restored loss history instead of starting a new one;
`checkpoint.init_from` only warm-starts the parameters.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Literal

import jax
import jax.numpy as jnp
from tqdm import tqdm

from charrnn.cells import build_cell, describe, init_forget_gate
from charrnn.ckpt import (
    abstractify_tree,
    apply_checkpoint_model,
    build_meta,
    check_vocab_compat,
    ckpt_dir_for,
    make_manager,
    restore_at_step,
    restore_step_dir,
    save,
)
from charrnn.config import Config, split_fractions, validate_config
from charrnn.data import CharSplitLoader
from charrnn.engine import TrainingEngine
from charrnn.params import flatten
from charrnn.types import (
    Batch,
    ConfigurationError,
    LossExplosion,
    NumericalDivergence,
    TrainingAborted,
    TrainState,
)
from charrnn.utils.checkpoints import (
    latest_step_dir,
    read_checkpoint_meta,
    resolve_checkpoint_path,
)
from charrnn.utils.devices import device_platform, select_device
from charrnn.utils.io import MetricsWriter, add_file_logging, create_run_dir, remove_file_logging
from charrnn.utils.tree import param_count

logger = logging.getLogger(__name__)

ResumeSpec = Literal["none", "latest"] | int


def _new_history(cfg: Config) -> dict[str, Any]:
    return {
        "train_losses": [],
        "val_losses": {},
        "learning_rate": float(cfg.optim.learning_rate),
        "loss0": None,
    }


def _train_state(engine: TrainingEngine, step: int) -> TrainState:
    return TrainState(
        step=jnp.asarray(step, dtype=jnp.int32),
        params=engine.arena.values,
        opt_state=engine.opt_state,
        rng=engine.key,
    )


def _resume_step_dir(cfg: Config, run_dir: Path, resume: ResumeSpec) -> Path | None:
    """Locate the step directory to resume from, without touching Orbax."""
    if resume == "none":
        return None
    if not cfg.checkpoint.enabled:
        raise ConfigurationError("Resume requested but checkpoint.enabled=false")
    ckpt_root = ckpt_dir_for(cfg, run_dir)
    if resume == "latest":
        step_dir = latest_step_dir(ckpt_root)
        if step_dir is None:
            raise FileNotFoundError(f"No checkpoints found in {ckpt_root}")
        return step_dir
    step_dir = ckpt_root / str(int(resume))
    if not step_dir.is_dir():
        raise FileNotFoundError(f"No checkpoint for step {resume} in {ckpt_root}")
    return step_dir


def _checkpoint_compat(cfg: Config, step_dir: Path, vocab: dict[str, int]) -> Config:
    """Check the checkpoint's vocabulary and adopt its model shape."""
    meta = read_checkpoint_meta(step_dir)
    check_vocab_compat(vocab, meta)
    return apply_checkpoint_model(cfg, meta)


def run(
    cfg: Config,
    *,
    config_path: str | Path | None = None,
    resume: ResumeSpec = "none",
    max_steps: int | None = None,
) -> Path:
    """Run a training job and return the run directory.

    `resume`:
      - "none": start fresh (optionally warm-started from checkpoint.init_from)
      - "latest": restore the latest checkpoint of logging.run_dir
      - int: restore that iteration's checkpoint

    :param Config cfg: Training configuration.
    :param config_path: Original YAML, copied into the run dir.
    :param resume: Resume mode.
    :param max_steps: Stop after this many iterations in this invocation.
    :raises ConfigurationError: Invalid config, vocabulary mismatch, corpus too small.
    :raises TrainingAborted: Numerical divergence or loss explosion.
    :return Path: The run directory.
    """
    validate_config(cfg)
    resume_dir = None
    if resume != "none" and cfg.logging.run_dir is not None:
        # Before create_run_dir, so a failed resume leaves nothing on disk.
        resume_dir = _resume_step_dir(cfg, Path(cfg.logging.run_dir), resume)
    run_dir = create_run_dir(cfg, config_path=config_path, allow_existing=resume != "none")
    log_path = run_dir / cfg.logging.log_file if cfg.logging.log_file else None
    if log_path is not None:
        add_file_logging(log_path, level=cfg.logging.level)
    try:
        _run(cfg, run_dir=run_dir, resume_dir=resume_dir, max_steps=max_steps)
    finally:
        if log_path is not None:
            remove_file_logging(log_path)
    return run_dir


def _run(cfg: Config, *, run_dir: Path, resume_dir: Path | None, max_steps: int | None) -> None:
    device = select_device(cfg.train.device, cfg.train.gpu_id)

    loader = CharSplitLoader(
        cfg.data.data_dir,
        cfg.train.batch_size,
        cfg.train.seq_length,
        split_fractions(cfg),
        input_file=cfg.data.input_file,
    )
    logger.info("vocabulary size: %d", loader.vocab_size)

    init_dir = None
    if resume_dir is not None:
        cfg = _checkpoint_compat(cfg, resume_dir, loader.vocab)
    elif cfg.checkpoint.init_from:
        init_dir, _ = resolve_checkpoint_path(cfg.checkpoint.init_from)
        logger.info("loading a model from checkpoint %s", init_dir)
        cfg = _checkpoint_compat(cfg, init_dir, loader.vocab)

    with jax.default_device(device):
        key = jax.random.PRNGKey(cfg.train.seed)
        key, k_model, k_engine = jax.random.split(key, 3)

        logger.info("creating an %s with %d layers", cfg.model.cell, cfg.model.num_layers)
        proto = build_cell(
            cfg.model.cell,
            loader.vocab_size,
            cfg.model.hidden_size,
            cfg.model.num_layers,
            cfg.model.dropout,
            key=k_model,
            init_range=cfg.model.init_range,
        )
        arena = flatten([proto])
        init_forget_gate(proto, cfg.model.forget_bias)
        logger.info("number of parameters in the model: %s", f"{param_count(arena.values):,}")
        logger.debug("model: %s", describe(proto))
        logger.info("parameters placed on %s", device_platform(arena.values))

        engine = TrainingEngine(
            proto,
            arena,
            batch_size=cfg.train.batch_size,
            seq_length=cfg.train.seq_length,
            optim=cfg.optim,
            key=k_engine,
            jit=cfg.train.jit,
        )
        _train(
            cfg,
            run_dir=run_dir,
            loader=loader,
            engine=engine,
            resume_dir=resume_dir,
            init_dir=init_dir,
            max_steps=max_steps,
        )


def _train(
    cfg: Config,
    *,
    run_dir: Path,
    loader: CharSplitLoader,
    engine: TrainingEngine,
    resume_dir: Path | None,
    init_dir: Path | None,
    max_steps: int | None,
) -> None:
    history = _new_history(cfg)
    start = 0
    abstract_state = abstractify_tree(_train_state(engine, 0))

    manager = None
    if cfg.checkpoint.enabled:
        manager = make_manager(
            ckpt_dir_for(cfg, run_dir),
            max_to_keep=cfg.checkpoint.max_to_keep,
            async_save=cfg.checkpoint.async_save,
        )

    if resume_dir is not None:
        start, items = restore_at_step(
            manager, step=int(resume_dir.name), abstract_train_state=abstract_state
        )
        # Resuming from an older step branches the run: later steps are replaced.
        for later in [s for s in manager.all_steps() if s > start]:
            logger.warning("Discarding checkpoint %d (newer than resume step %d)", later, start)
            manager.delete(later)
        state = items["train_state"]
        engine.arena.values = state.params
        engine.opt_state = state.opt_state
        engine.key = state.rng
        engine.step_count = start
        if items["history"]:
            history = items["history"]
            engine.learning_rate = history["learning_rate"]
        if items["data_state"]:
            loader.set_state(items["data_state"])
        logger.info(
            "resumed from checkpoint step %d (%d recorded train losses)",
            start,
            len(history["train_losses"]),
        )
    elif init_dir is not None:
        _, items = restore_step_dir(init_dir, abstract_train_state=abstract_state)
        engine.arena.values = items["train_state"].params

    ntrain = loader.ntrain
    iterations = cfg.train.max_epochs * ntrain
    stop = iterations if max_steps is None else min(iterations, start + int(max_steps))
    if start >= iterations:
        logger.info("start step (%d) >= total iterations (%d); nothing to do", start, iterations)
        if manager is not None:
            manager.close()
        return

    val_loss = None
    phase = "running"
    i = start
    metrics_path = run_dir / cfg.logging.metrics_file
    with MetricsWriter(metrics_path) as mw:
        try:
            progress = tqdm(
                range(start + 1, stop + 1),
                initial=start,
                total=iterations,
                desc="train",
                dynamic_ncols=True,
                disable=not cfg.logging.progress,
            )
            for i in progress:
                epoch = i / ntrain
                if (i - 1) % ntrain == 0:
                    engine.reset_state()

                batch = Batch.from_numpy(*loader.next_batch("train"))
                t0 = time.perf_counter()
                metrics = engine.step(batch)
                if cfg.train.accurate_timing:
                    jax.block_until_ready(engine.arena.values)
                dt = time.perf_counter() - t0

                train_loss = metrics["loss"]
                history["train_losses"].append(train_loss)

                # Exponential learning-rate decay at epoch boundaries.
                if i % ntrain == 0 and cfg.optim.lr_decay < 1 and epoch >= cfg.optim.lr_decay_after:
                    engine.learning_rate = engine.learning_rate * cfg.optim.lr_decay
                    history["learning_rate"] = engine.learning_rate
                    phase = "decaying"
                    logger.info(
                        "decayed learning rate by a factor %s to %s",
                        cfg.optim.lr_decay,
                        engine.learning_rate,
                    )

                if i % cfg.train.eval_every == 0 or i == iterations:
                    val_loss = engine.evaluate(loader, "val", cfg.train.eval_max_batches)
                    if val_loss is not None:
                        history["val_losses"][str(i)] = val_loss
                    mw.write({"step": i, "epoch": epoch, "val_loss": val_loss})
                    if manager is not None:
                        logger.info("saving checkpoint for iteration %d (val_loss=%s)", i, val_loss)
                        save(
                            manager,
                            step=i,
                            train_state=_train_state(engine, i),
                            data_state=loader.get_state(),
                            history=history,
                            meta=build_meta(
                                step=i,
                                epoch=epoch,
                                val_loss=val_loss,
                                config=cfg.to_dict(),
                                vocab=loader.vocab,
                            ),
                        )

                if i % cfg.train.log_every == 0:
                    logger.info(
                        "%d/%d (epoch %.3f), train_loss = %6.8f, "
                        "grad/param norm = %6.4e, time/batch = %.4fs",
                        i,
                        iterations,
                        epoch,
                        train_loss,
                        metrics["grad_param_ratio"],
                        dt,
                    )
                    mw.write(
                        {
                            "step": i,
                            "epoch": epoch,
                            "phase": phase,
                            "time_per_batch_s": dt,
                            **metrics,
                        }
                    )

                if history["loss0"] is None:
                    history["loss0"] = train_loss
                if train_loss > cfg.optim.explode_factor * history["loss0"]:
                    raise LossExplosion(
                        f"loss is exploding ({train_loss:.4f} > {cfg.optim.explode_factor} x "
                        f"initial {history['loss0']:.4f}), aborting.",
                        step=i,
                    )

            status = "converged" if i >= iterations else "stopped"
            logger.info("training %s at iteration %d/%d", status, i, iterations)
            mw.write({"step": i, "status": status, "val_loss": val_loss})

        except TrainingAborted as exc:
            if isinstance(exc, NumericalDivergence):
                logger.error(
                    "loss is NaN. This usually indicates a bug or a too-high learning rate."
                )
            logger.error("Training aborted at iteration %d: %s", i, exc)
            mw.write({"step": i, "aborted": exc.reason, "error": str(exc)})
            raise
        except Exception as exc:
            logger.exception("Training crashed at iteration %d", i)
            mw.write({"step": i, "crash": True, "error": repr(exc)})
            raise
        finally:
            if manager is not None:
                manager.wait_until_finished()
                manager.close()
