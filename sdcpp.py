#!/usr/bin/env python
"""SD.cpp Backend CLI.

Drive the stable-diffusion.cpp backend from the command line: install the
engine, inspect how a model would be handled, and generate images.

Examples:
    # Install (or update) the engine for the configured device
    sdcpp provision --device cuda

    # How is this model classified and what would be run?
    sdcpp classify flux1-schnell-q8_0.gguf
    sdcpp plan Models/flux/flux1-dev.safetensors --prompt "a lighthouse"

    # Generate
    sdcpp generate Models/sdxl/sd_xl_base_1.0.safetensors --prompt "a cat" --output-dir ./out

    # Quantize a checkpoint
    sdcpp convert Models/sd15/v1-5.safetensors --quant q8_0
"""
from __future__ import annotations

import argparse
import asyncio
import shutil
import sys
from pathlib import Path

# Ensure project root is in path
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def _config(args: argparse.Namespace):
    from config.config import get_config

    config = get_config()
    if getattr(args, "device", None):
        config.device = args.device
    if getattr(args, "debug", False):
        config.debug_mode = True
    return config


def _backend(args: argparse.Namespace):
    from sdcpp_backend.backend import SDcppBackend

    return SDcppBackend(_config(args))


def _request(args: argparse.Namespace):
    from sdcpp_backend.request import GenerationRequest

    return GenerationRequest(
        model_path=Path(args.model),
        model_class=args.class_id or "",
        prompt=args.prompt,
        negative_prompt=args.negative_prompt or "",
        width=args.width,
        height=args.height,
        steps=args.steps,
        cfg_scale=args.cfg_scale,
        seed=args.seed,
        sampler=args.sampler,
        batch_count=args.batch_count,
        init_image=args.init_image,
        strength=args.strength,
        vae_tiling=True if args.vae_tiling else None,
        offload_to_cpu=True if args.offload_to_cpu else None,
    )


def cmd_info(args: argparse.Namespace) -> int:
    """Show host, config and installed engines."""
    from sdcpp_backend.orchestration.hardware_profiler import get_profiler

    config = _config(args)
    profiler = get_profiler()
    print("📊 System Information\n")
    print(profiler.host_profile(force_refresh=True).summary())
    stats = profiler.accelerator_stats(config.device)
    if stats.has_accelerator:
        print(f"  Accelerator: {stats.device_name} ({stats.free_gb:.1f}/{stats.total_gb:.1f} GB free)")
    else:
        print("  Accelerator: none")

    print(f"\n⚙️  Device: {config.device_key}  Models: {config.models_root}")
    for issue in config.config_issues():
        print(f"   ⚠️  {issue}")

    backend = _backend(args)
    installs = backend.installed_versions()
    print("\n📦 Installed engines")
    if not installs:
        print("   none (run `sdcpp provision`)")
    for inst in installs:
        print(f"   {inst.device}: {inst.tag} -> {inst.executable}")
    return 0


def cmd_provision(args: argparse.Namespace) -> int:
    """Install or update the engine."""
    from sdcpp_backend.errors import ProvisionError

    config = _config(args)
    backend = _backend(args)
    try:
        exe = backend.provisioner.ensure_available(
            config.device_key, auto_update=config.auto_update, force_update=args.force_update
        )
    except ProvisionError as e:
        print(f"❌ {e}")
        return 1
    print(f"✅ SD.cpp ready for {config.device_key}: {exe}")
    return 0


def cmd_classify(args: argparse.Namespace) -> int:
    """Classify a model by name."""
    from sdcpp_backend.orchestration.architecture_classifier import ModelMetadata, get_classifier

    resolution = tuple(args.resolution) if args.resolution else None
    metadata = ModelMetadata.from_path(args.name, class_id=args.class_id or "", resolution=resolution)
    print(get_classifier().explain(metadata).summary())
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    """Dry run: resolve, evaluate memory and compile without launching."""
    from sdcpp_backend.errors import SDcppError
    from sdcpp_backend.execution.command_line import build_command_line

    backend = _backend(args)
    backend.index.scan()
    scratch = backend.new_scratch_dir()
    try:
        plan = backend.prepare(_request(args), scratch)
    except SDcppError as e:
        print(f"❌ {e}")
        return 1
    finally:
        shutil.rmtree(scratch, ignore_errors=True)

    print(plan.summary())
    exe = backend.config.executable_path or "sd-cli"
    print("\nCommand line:")
    print(" ".join(build_command_line(Path(exe), plan.descriptor, backend.config.device)))
    return 0


def cmd_generate(args: argparse.Namespace) -> int:
    """Generate images and write them to the output directory."""
    from sdcpp_backend.errors import SDcppError

    backend = _backend(args)
    if not backend.init():
        print(f"❌ {backend.status_message}")
        return 1

    def on_progress(value: float) -> None:
        print(f"\r   Progress: {value * 100:5.1f}%", end="", flush=True)

    print(f"🎨 Generating with {Path(args.model).name}")
    try:
        result = asyncio.run(backend.generate(_request(args), on_progress=on_progress))
    except SDcppError as e:
        print(f"\n❌ {e}")
        return 1
    print()

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for output in result.outputs:
        target = output_dir / output.name
        target.write_bytes(output.data)
        print(f"💾 {target}")
    print(f"✅ Done in {result.duration_seconds:.1f}s")
    return 0


def cmd_convert(args: argparse.Namespace) -> int:
    """Quantize a checkpoint to GGUF."""
    from sdcpp_backend.errors import SDcppError

    backend = _backend(args)
    if not backend.init():
        print(f"❌ {backend.status_message}")
        return 1
    try:
        target = asyncio.run(backend.convert(args.model, args.quant, args.output_dir))
    except (SDcppError, ValueError, FileNotFoundError) as e:
        print(f"❌ {e}")
        return 1
    print(f"✅ {target}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the status API."""
    import uvicorn

    from sdcpp_backend.api.server import create_app

    config = _config(args)
    backend = _backend(args)
    backend.init(background_updates=True)
    host = args.host or config.api_host
    port = args.port or config.api_port
    print(f"🌐 Endpoint: http://{host}:{port}")
    print(f"📖 API Docs: http://{host}:{port}/docs")
    try:
        uvicorn.run(create_app(backend), host=host, port=port, log_level=config.log_level.lower())
    finally:
        backend.shutdown()
    return 0


def _add_generation_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("model", help="Path to the main model file")
    p.add_argument("--prompt", required=True)
    p.add_argument("--negative-prompt", default="")
    p.add_argument("--class-id", default="", help="Host model class (improves classification)")
    p.add_argument("--width", type=int, default=512)
    p.add_argument("--height", type=int, default=512)
    p.add_argument("--steps", type=int, default=0, help="0 = architecture default")
    p.add_argument("--cfg-scale", type=float, default=None)
    p.add_argument("--seed", type=int, default=-1)
    p.add_argument("--sampler", default=None)
    p.add_argument("--batch-count", type=int, default=1)
    p.add_argument("--init-image", default=None)
    p.add_argument("--strength", type=float, default=0.75)
    p.add_argument("--vae-tiling", action="store_true")
    p.add_argument("--offload-to-cpu", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser."""
    parser = argparse.ArgumentParser(
        prog="sdcpp",
        description="stable-diffusion.cpp backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sdcpp info
  sdcpp provision --device vulkan
  sdcpp classify z_image_turbo.safetensors
  sdcpp plan Models/flux/flux1-schnell.gguf --prompt "a fox"
  sdcpp generate Models/sd15/v1-5.safetensors --prompt "a fox" --output-dir ./out
  sdcpp convert Models/sd15/v1-5.safetensors --quant q4_0
  sdcpp serve --port 7801
        """,
    )
    parser.add_argument("--device", choices=["cpu", "cuda", "vulkan"], default=None)
    parser.add_argument("--debug", action="store_true", help="Verbose engine output and logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    info_parser = subparsers.add_parser("info", help="Show system info and installed engines")
    info_parser.set_defaults(func=cmd_info)

    prov_parser = subparsers.add_parser("provision", help="Install or update the engine")
    prov_parser.add_argument("--force-update", action="store_true", help="Check for a new release now")
    prov_parser.set_defaults(func=cmd_provision)

    cls_parser = subparsers.add_parser("classify", help="Classify a model")
    cls_parser.add_argument("name", help="Model file name or path")
    cls_parser.add_argument("--class-id", default="")
    cls_parser.add_argument("--resolution", type=int, nargs=2, metavar=("W", "H"))
    cls_parser.set_defaults(func=cmd_classify)

    plan_parser = subparsers.add_parser("plan", help="Show the compiled job without running it")
    _add_generation_args(plan_parser)
    plan_parser.set_defaults(func=cmd_plan)

    gen_parser = subparsers.add_parser("generate", help="Generate images")
    _add_generation_args(gen_parser)
    gen_parser.add_argument("--output-dir", default="./outputs")
    gen_parser.set_defaults(func=cmd_generate)

    conv_parser = subparsers.add_parser("convert", help="Quantize a model to GGUF")
    conv_parser.add_argument("model")
    conv_parser.add_argument("--quant", default="q8_0")
    conv_parser.add_argument("--output-dir", default=None)
    conv_parser.set_defaults(func=cmd_convert)

    serve_parser = subparsers.add_parser("serve", help="Start the status API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main() -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    from config.config import get_config
    from utils.logging_setup import configure_logging

    config = get_config()
    configure_logging("DEBUG" if args.debug else config.log_level, config.log_file)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
