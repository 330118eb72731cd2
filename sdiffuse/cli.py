"""Command line entry point: ``sdiffuse --config models.json --prompt "..."``."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from sdiffuse.config import EXECUTION_PROVIDERS, SCHEDULERS, GenerationConfig, PipelineConfig
from sdiffuse.errors import SdiffuseError
from sdiffuse.pipeline import StableDiffusionPipeline

logger = logging.getLogger("sdiffuse")

EXIT_FAILURE = 1
EXIT_REJECTED = 2


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate an image from a text prompt with ONNX Stable Diffusion models.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="JSON file with model paths (text_encoder_path, unet_path, vae_decoder_path, tokenizer_dir, ...).",
    )
    parser.add_argument("--prompt", type=str, required=True, help="Positive prompt text.")
    parser.add_argument("--negative-prompt", type=str, default=None, help="Optional negative prompt.")
    parser.add_argument("--height", type=int, default=512, help="Output height (must be divisible by 8).")
    parser.add_argument("--width", type=int, default=512, help="Output width (must be divisible by 8).")
    parser.add_argument("--num-steps", type=int, default=15, help="Number of inference steps.")
    parser.add_argument("--guidance-scale", type=float, default=7.5, help="Classifier-free guidance scale.")
    parser.add_argument("--seed", type=int, default=None, help="Latent seed; random when omitted.")
    parser.add_argument("--safety", action="store_true", help="Reject images flagged by the safety checker.")
    parser.add_argument("--scheduler", choices=SCHEDULERS, default=None, help="Override the configured scheduler.")
    parser.add_argument(
        "--execution-provider",
        choices=EXECUTION_PROVIDERS,
        default=None,
        help="Override the configured ONNX Runtime execution provider.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output PNG file or directory. Defaults to image_output_path from the config, else the working directory.",
    )
    parser.add_argument("--no-progress", action="store_true", help="Hide the denoising progress bar.")
    parser.add_argument("--verbose", action="store_true", help="Log per-step latent statistics.")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    start = time.perf_counter()

    try:
        config = PipelineConfig.from_json(
            args.config,
            scheduler=args.scheduler,
            execution_provider=args.execution_provider,
        )
        generation = GenerationConfig(
            height=args.height,
            width=args.width,
            num_inference_steps=args.num_steps,
            guidance_scale=args.guidance_scale,
            seed=args.seed,
            safety_enabled=args.safety,
        )
        generation.validate(config.vae_scale_factor)
        output = args.output or config.image_output_path or Path.cwd()

        with StableDiffusionPipeline.from_config(config, safety_enabled=args.safety) as pipeline:
            result = pipeline.generate(
                args.prompt,
                args.negative_prompt,
                generation,
                output_path=output,
                progress=not args.no_progress,
            )
    except SdiffuseError as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    logger.info("Time taken: %.0fms", (time.perf_counter() - start) * 1000)
    if result.rejected:
        print("Unable to create image, please try again.")
        return EXIT_REJECTED
    print(f"Saved image to {result.output_path} (seed {result.seed})")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
