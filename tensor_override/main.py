#!/usr/bin/env python3
"""
Main Tensor Override Planner
Orchestrates CUDA detection, GGUF loading, tensor placement and parameter
generation for llama.cpp.
"""

import argparse
import json
import os
import sys
from datetime import datetime
from typing import Dict, List, Optional

from tensor_override.config import build_run_config, load_config
from tensor_override.cuda_detector import CUDADetector
from tensor_override.errors import ConfigurationError, TensorOverrideError
from tensor_override.gguf_analyzer import GGUFAnalyzer, print_model_summary
from tensor_override.parameter_generator import ParameterGenerator
from tensor_override.system import get_ram_bytes, get_ram_info
from tensor_override.tensor_optimizer import TensorOptimizer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tensor-override",
        description="Plan llama.cpp tensor placement across CUDA devices and host RAM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tensor-override model.gguf -c 32768
  tensor-override model-00001-of-00003.gguf -c 32768 --context-quantization-size 8
  tensor-override https://host/model.gguf -c 8192 --gpu-percentage 0.85
  tensor-override model.gguf -c 8192 --granular-gpu-percentage 0.9,0.8 --no-check
        """
    )

    parser.add_argument('model', help='Path or URL of the GGUF model (first shard for split models)')
    parser.add_argument('-c', '--context-length', type=int, help='Context length to reserve KV cache for')
    parser.add_argument('--context-quantization-size', type=int, choices=[4, 8, 16],
                        help='KV cache element size in bits (default 16)')
    parser.add_argument('--no-check', dest='check', action='store_false', default=None,
                        help="Skip the memory check and let host RAM overcommit. Useful when you're using swap")
    gpu_group = parser.add_mutually_exclusive_group()
    gpu_group.add_argument('--gpu-percentage', help='Fraction of each GPU to use (default 0.9)')
    gpu_group.add_argument('--granular-gpu-percentage',
                           help='Fraction per GPU, e.g. "0.9,0.8,0.7", indexed by CUDA device')
    parser.add_argument('--ram-bytes', type=int, help='Use this host memory size instead of detecting it')
    parser.add_argument('--config', default='config.json', help='Configuration file path')
    parser.add_argument('--output-dir', default=os.getcwd(), help='Output directory for saved files')
    parser.add_argument('--output-filename', default='tensor_override_params.txt',
                        help='Filename for the saved parameters')
    parser.add_argument('--save-analysis', action='store_true', help='Also save the plan as JSON')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
    return parser


def apply_arguments(config: Dict, args: argparse.Namespace) -> Dict:
    """CLI flags win over config file values"""
    if args.context_length is not None:
        config['context_length'] = args.context_length
    if args.context_quantization_size is not None:
        config['context_quantization_size'] = args.context_quantization_size
    if args.check is not None:
        config['check'] = args.check
    if args.gpu_percentage is not None:
        config['gpu_percentage'] = args.gpu_percentage
        config['granular_gpu_percentage'] = None
    if args.granular_gpu_percentage is not None:
        config['granular_gpu_percentage'] = args.granular_gpu_percentage
        config['gpu_percentage'] = None
    if args.verbose:
        config['output']['verbose'] = True
    if args.save_analysis:
        config['output']['save_analysis_json'] = True
    return config


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = apply_arguments(load_config(args.config), args)
    run_config = build_run_config(config)

    print("=" * 70)
    print("Tensor Override Planner for llama.cpp")
    print("=" * 70)
    print(f"Model: {args.model}")
    print(f"Context: {run_config.context_length:,} tokens, {run_config.context_quant_bits}-bit KV cache")
    print()

    # Step 1: Detect CUDA devices
    print("Step 1: Detecting CUDA devices...")
    cuda_detector = CUDADetector()
    gpus = cuda_detector.detect_devices()
    if not gpus:
        print("Error: No CUDA devices detected. Cannot optimize tensor placement.", file=sys.stderr)
        return 1
    if run_config.per_device_utilization is not None and len(run_config.per_device_utilization) != len(gpus):
        raise ConfigurationError(
            f"Got {len(run_config.per_device_utilization)} granular GPU percentages for {len(gpus)} GPUs"
        )
    if run_config.verbose:
        cuda_detector.print_device_summary()

    host_bytes = args.ram_bytes if args.ram_bytes is not None else get_ram_bytes()
    print(f"Host memory: {host_bytes / (1024 ** 3):.1f} GiB")
    if run_config.verbose:
        ram_info = get_ram_info()
        print(f"  Detected RAM: {ram_info['total_ram_gb']} GB total, {ram_info['available_ram_gb']} GB available")
    print()

    # Step 2: Load GGUF model
    print("Step 2: Loading GGUF model...")
    analyzer = GGUFAnalyzer(download_dir=config.get('download_dir'), verbose=run_config.verbose)
    model = analyzer.load(args.model)
    if run_config.verbose:
        print_model_summary(model)
    print()

    # Step 3: Optimize tensor placement
    print("Step 3: Optimizing tensor placement...")
    optimizer = TensorOptimizer(
        model, gpus, host_bytes, run_config.context_length,
        context_quant_bits=run_config.context_quant_bits,
        check=run_config.check,
        gpu_utilization=run_config.gpu_utilization,
        per_device_utilization=run_config.per_device_utilization,
        host_utilization=run_config.host_utilization,
        log=print if run_config.verbose else None,
    )
    result = optimizer.optimize_tensor_placement()

    param_generator = ParameterGenerator(result)
    param_generator.print_assignment_summary()
    print()

    # Step 4: Output parameters
    print("llama.cpp parameters:")
    print("-" * 40)
    print(result.command_fragment)
    print()

    output_config = config.get('output', {})
    if output_config.get('save_override_params', True):
        os.makedirs(args.output_dir, exist_ok=True)
        param_generator.save_parameters(os.path.join(args.output_dir, args.output_filename), args.model)

    if output_config.get('save_analysis_json', False):
        analysis_file = os.path.join(args.output_dir, 'tensor_analysis.json')
        analysis_data = {
            'timestamp': datetime.now().isoformat(),
            'model': args.model,
            'architecture': model.architecture,
            'config': config,
            'cuda_devices': cuda_detector.get_device_info(),
            'host_memory_bytes': host_bytes,
            'assignments': param_generator.get_assignment_data(),
        }
        with open(analysis_file, 'w') as f:
            json.dump(analysis_data, f, indent=2)
        print(f"Analysis results saved to: {analysis_file}")

    return 0


def main():
    try:
        sys.exit(run())
    except TensorOverrideError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
