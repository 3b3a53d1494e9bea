"""Command-line interface for the texture pipeline."""

import argparse
import logging
import os
import signal
import sys

from .config import ORIGINAL_EXPORT_OPTIONS, PipelineConfig
from .core import PipelineCancelledError, setup_logging

logger = logging.getLogger("texture_pipeline")


def _fail(message: str, code: int = 1):
    logger.error(message)
    print(f"Error: {message}")
    sys.exit(code)


def _read_inputs(paths):
    from .bundle import input_name_for

    inputs = {}
    for path in paths:
        if not os.path.isfile(path):
            _fail(f"Input file not found: {path}")
        name = input_name_for(path)
        if name in inputs:
            _fail(f"Two inputs share the name '{name}': rename one of them")
        with open(path, "rb") as f:
            inputs[name] = f.read()
    return inputs


def _write_containers(batch, args, config, input_paths):
    from .bundle import bundle_outputs, output_file_name, write_bytes
    from .pipeline import collect_outputs

    suffix = config.export.output_suffix
    outputs = collect_outputs(batch)
    if isinstance(outputs, (bytes, bytearray)):
        name = next(iter(batch))
        if args.output and not os.path.isdir(args.output) and not args.output.endswith(os.sep):
            dest = args.output
        else:
            out_dir = args.output or os.path.dirname(os.path.abspath(input_paths[0]))
            dest = os.path.join(out_dir, output_file_name(name, suffix))
        write_bytes(dest, outputs)
        logger.info("Wrote %s", dest)
        return
    if not outputs:
        return

    out_dir = args.output or os.path.dirname(os.path.abspath(input_paths[0]))
    if args.zip or config.export.zip_outputs:
        zip_name, data = bundle_outputs(outputs, suffix, config.export.zip_fallback_name)
        dest = os.path.join(out_dir, zip_name)
        write_bytes(dest, data)
        logger.info("Wrote %s", dest)
        return
    for name, data in outputs.items():
        dest = os.path.join(out_dir, output_file_name(name, suffix))
        write_bytes(dest, data)
        logger.info("Wrote %s", dest)


def _write_textures(batch, args, config):
    from .bundle import bundle_textures, texture_sets, write_bytes, write_texture_dirs

    sets = texture_sets(batch)
    if args.zip or config.export.zip_outputs:
        zip_name, data = bundle_textures(sets, config.export.zip_fallback_name)
        dest = os.path.join(args.export_textures, zip_name)
        write_bytes(dest, data)
        logger.info("Wrote %s", dest)
    else:
        write_texture_dirs(sets, args.export_textures)


def main():
    """Parse CLI arguments, run the pipeline, and map outcomes to exit codes."""
    parser = argparse.ArgumentParser(
        description="Shrink embedded textures inside .glb containers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  texshrink robot.glb -o robot_small.glb --scale 0.5
  texshrink a.glb b.glb -o out/ --zip
  texshrink robot.glb --export-textures textures/
  texshrink robot.glb --export-originals --export-textures textures/ --zip
  texshrink --generate-config -c texshrink.yaml
        """
    )
    parser.add_argument("inputs", nargs="*", help="Input .glb files")
    parser.add_argument("--output", "-o",
                        help="Output file (single input) or directory")
    parser.add_argument("--config", "-c", help="Path to config YAML")
    parser.add_argument("--scale", type=float, help="Downscale factor in (0, 1]")
    parser.add_argument("--palette-size", type=int,
                        help="Palette colors for PNG outputs [2, 256]")
    parser.add_argument("--jpeg-quality", type=float,
                        help="JPEG quality in [0, 1]")
    parser.add_argument("--export-textures", metavar="DIR",
                        help="Also write the transcoded textures under DIR")
    parser.add_argument("--export-originals", action="store_true",
                        help="Only export textures at full size (no container output)")
    parser.add_argument("--zip", action="store_true",
                        help="Bundle outputs into ZIP archives")
    parser.add_argument("--workers", type=int, help="Parallel image workers per container")
    parser.add_argument("--generate-config", action="store_true",
                        help="Generate a default config YAML")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", metavar="PATH",
                        help="Also write the log to a rotating file")

    args = parser.parse_args()

    if args.generate_config:
        config = PipelineConfig()
        dest = args.config or "texshrink.yaml"
        if os.path.isdir(dest):
            dest = os.path.join(dest, "texshrink.yaml")
        config.to_yaml(dest)
        print(f"Generated default {dest}")
        return

    # Make config warnings visible before full logging is configured.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if args.config:
        if not os.path.exists(args.config):
            _fail(f"Config file not found: {args.config}")
        try:
            config = PipelineConfig.from_yaml(args.config)
        except ValueError as e:
            _fail(f"Invalid config: {e}")
    else:
        config = PipelineConfig()

    # CLI overrides
    if args.scale is not None:
        config.transcode.scale_factor = args.scale
    if args.palette_size is not None:
        config.transcode.palette_size = args.palette_size
    if args.jpeg_quality is not None:
        config.transcode.lossy_quality = args.jpeg_quality
    if args.workers is not None:
        config.max_workers = args.workers
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file

    setup_logging(config.log_level, config.log_file or None, force=True)

    try:
        config.validate()
    except ValueError as e:
        _fail(str(e))

    if not args.inputs:
        parser.print_usage()
        _fail("No input files given")
    if args.export_originals and not args.export_textures:
        _fail("--export-originals requires --export-textures DIR")

    inputs = _read_inputs(args.inputs)

    from .pipeline import TexturePipeline
    pipeline = TexturePipeline(config)

    def _sigterm_handler(signum, frame):
        logger.warning("Received SIGTERM. Cancelling...")
        pipeline.request_cancel()

    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _sigterm_handler)

    try:
        if args.export_originals:
            batch = pipeline.export_batch(inputs, ORIGINAL_EXPORT_OPTIONS)
            _write_textures(batch, args, config)
        else:
            batch = pipeline.run_batch(inputs)
            _write_containers(batch, args, config, args.inputs)
            if args.export_textures:
                _write_textures(batch, args, config)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user.")
        pipeline.request_cancel()
        sys.exit(130)
    except PipelineCancelledError as exc:
        logger.warning("Pipeline cancelled: %s", exc)
        sys.exit(130)
    except OSError as exc:
        _fail(f"Cannot write output: {exc}")

    if not batch.all_ok:
        for name in batch.failed:
            print(f"Error: {name}: {batch[name].error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
