#!/usr/bin/env python3
"""
Iris v9 Analysis - Command Line Entry Point
Analyses a left/right iris pair with the v9 pipeline and writes JSON, text
and CSV reports into the results directory.
"""

import argparse
import asyncio
import json
import os
import sys

from irisv9.config import load_config
from irisv9.core.aggregator import ScoringPolicy
from irisv9.core.errors import SideAnalysisError
from irisv9.core.orchestrator import PipelineOptions, console_log
from irisv9.core.prompts import DEFAULT_CATALOG, PipelineConfig, apply_pipeline_config, prompt_summaries
from irisv9.core.report import analyze_report, render_text_report, report_to_frame, save_report
from irisv9.models.llm_client import LLMGateway
from irisv9.models.schemas import IrisImage, QuestionnaireData
from irisv9.utils.image_io import image_file_to_data_url
from irisv9.utils.storage import JsonFileStore


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description="Iris v9 Analysis System")
    parser.add_argument("--left", help="Path to the left iris image")
    parser.add_argument("--right", help="Path to the right iris image")
    parser.add_argument("--questionnaire", help="Path to a questionnaire JSON file")
    parser.add_argument("--output", help="Custom results directory")
    parser.add_argument("--side-failure", choices=["abort", "partial"],
                        help="What to do when one side fails (default from config)")
    parser.add_argument("--sequential", action="store_true", help="Run the two detectors one after the other")
    parser.add_argument("--list-prompts", action="store_true", help="Print prompt sources and checksums, then exit")
    return parser.parse_args(argv)


def load_questionnaire(path):
    with open(path, 'r', encoding='utf-8') as f:
        return QuestionnaireData.model_validate(json.load(f))


def load_iris_image(path, side, config):
    image_cfg = config['image_processing']
    data_url = image_file_to_data_url(
        path,
        target_size=(image_cfg['resize_width'], image_cfg['resize_height']),
        quality=image_cfg['jpg_quality'],
    )
    return IrisImage(data_url=data_url, side=side)


def print_progress(stage_name, percent):
    print(f"  [{percent:3d}%] {stage_name}")


def write_outputs(report, config, results_dir):
    """Write <id>.json, <id>.txt and <id>_zones.csv; returns the written paths"""
    os.makedirs(results_dir, exist_ok=True)
    base = os.path.join(results_dir, report.id)

    json_path = f"{base}.json"
    with open(json_path, "w", encoding='utf-8') as f:
        json.dump(report.model_dump(by_alias=True, mode='json'), f, ensure_ascii=False, indent=2)

    text_path = f"{base}.txt"
    with open(text_path, "w", encoding='utf-8') as f:
        f.write(render_text_report(report, config))

    csv_path = f"{base}_zones.csv"
    report_to_frame(report).to_csv(csv_path, index=False)

    return [json_path, text_path, csv_path]


def analyze_pair(args, config):
    pipeline_cfg = config['pipeline']
    options = PipelineOptions.from_config(config)
    if args.sequential:
        options = PipelineOptions(options.retries, options.retry_backoff, False)
    pipeline_config = PipelineConfig(steps=pipeline_cfg.get('steps', []))

    print(f"Model: {config['model']['name']} ({config['model']['provider']})")
    print(f"Version: {config['version']}")

    questionnaire = load_questionnaire(args.questionnaire)
    left = load_iris_image(args.left, "left", config)
    right = load_iris_image(args.right, "right", config)

    gateway = LLMGateway.from_config(config)
    side_failure = args.side_failure or pipeline_cfg['side_failure']

    print("\n--- Running v9 pipeline ---")
    report = asyncio.run(analyze_report(
        left, right, questionnaire, gateway,
        on_progress=print_progress,
        add_log=console_log,
        options=options,
        pipeline_config=pipeline_config,
        policy=ScoringPolicy.from_config(config),
        side_failure=side_failure,
    ))

    results_dir = args.output or config['data']['results_directory']
    paths = write_outputs(report, config, results_dir)
    save_report(JsonFileStore(config['data']['store_directory']), report)

    print("\nAnalysis complete!")
    print(report.summary)
    for path in paths:
        print(f"Report saved to: {path}")
    print(f"LLM requests made: {gateway.request_count}")
    return report


def main(argv=None):
    """Main entry point for the program"""
    args = parse_args(argv)
    config = load_config()

    if args.list_prompts:
        catalog = apply_pipeline_config(DEFAULT_CATALOG, PipelineConfig(steps=config['pipeline'].get('steps', [])))
        for summary in prompt_summaries(catalog):
            print(f"{summary['stage']:<7} {summary['version']}  {summary['checksum']:>8}  {summary['source']}")
        return 0

    if not (args.left and args.right and args.questionnaire):
        print("Error: --left, --right and --questionnaire are all required.")
        print("Usage: irisv9-analyze --left LEFT.jpg --right RIGHT.jpg --questionnaire answers.json")
        print("For help: irisv9-analyze --help")
        return 2

    try:
        analyze_pair(args, config)
    except SideAnalysisError as e:
        print(f"Error: {e}")
        cause = e.cause
        if getattr(cause, "code", None):
            print(f"Failed stage: {cause.stage}, code: {cause.code}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
