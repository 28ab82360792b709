#!/usr/bin/env python3
"""
Iris v9 Analysis System - Streamlit Web Interface

Questionnaire + left/right iris upload, live pipeline progress and logs,
zone tables, system score charts and a viewer for saved reports.
"""

import asyncio
import os
import sys
from datetime import datetime

import pandas as pd
import streamlit as st

# Add the src directory to the path so `streamlit run` works from a checkout
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from irisv9.config import load_config as read_config
from irisv9.core.aggregator import ScoringPolicy
from irisv9.core.errors import SideAnalysisError
from irisv9.core.orchestrator import PipelineOptions
from irisv9.core.prompts import PipelineConfig
from irisv9.core.report import analysis_to_frame, analyze_report, list_reports, load_report, render_text_report, save_report
from irisv9.models.llm_client import LLMGateway
from irisv9.models.schemas import IrisImage, QuestionnaireData
from irisv9.utils.image_io import image_file_to_data_url
from irisv9.utils.storage import JsonFileStore

STATUS_COLORS = {"normal": "#d4edda", "attention": "#fff3cd", "concern": "#f8d7da"}

st.set_page_config(
    page_title="Iris v9 Analysis System",
    page_icon="👁️",
    layout="wide",
    initial_sidebar_state="expanded"
)


@st.cache_data
def load_config():
    return read_config()


def get_store(config):
    return JsonFileStore(config['data']['store_directory'])


def questionnaire_form():
    """Collect questionnaire answers as QuestionnaireData"""
    st.subheader("Questionnaire")
    col1, col2, col3 = st.columns(3)
    with col1:
        age = st.number_input("Age", min_value=1, max_value=120, value=40)
        gender = st.selectbox("Gender", ["male", "female", "other"])
        weight = st.number_input("Weight (kg)", min_value=1.0, max_value=400.0, value=70.0)
        height = st.number_input("Height (cm)", min_value=50.0, max_value=250.0, value=170.0)
    with col2:
        goals = st.multiselect("Goals", ["energy", "digestion", "sleep", "weight", "immunity", "stress"])
        health_status = st.multiselect("Health status", ["healthy", "chronic condition", "recovering", "pregnant"])
        dietary_habits = st.multiselect("Dietary habits", ["omnivore", "vegetarian", "vegan", "low carb", "irregular"])
        complaints = st.text_area("Complaints", height=80)
    with col3:
        stress_level = st.selectbox("Stress level", ["low", "moderate", "high"])
        sleep_hours = st.slider("Sleep hours", min_value=0.0, max_value=12.0, value=7.0, step=0.5)
        sleep_quality = st.selectbox("Sleep quality", ["good", "average", "poor"])
        activity_level = st.selectbox("Activity level", ["sedentary", "light", "moderate", "high"])
        medications = st.text_input("Medications")
        allergies = st.text_input("Allergies")

    return QuestionnaireData(
        age=age, gender=gender, weight=weight, height=height, goals=goals, complaints=complaints,
        health_status=health_status, dietary_habits=dietary_habits, stress_level=stress_level,
        sleep_hours=sleep_hours, sleep_quality=sleep_quality, activity_level=activity_level,
        medications=medications, allergies=allergies,
    )


def run_analysis(config, questionnaire, left_file, right_file, side_failure):
    image_cfg = config['image_processing']
    target_size = (image_cfg['resize_width'], image_cfg['resize_height'])
    left = IrisImage(data_url=image_file_to_data_url(left_file, target_size, image_cfg['jpg_quality']), side="left")
    right = IrisImage(data_url=image_file_to_data_url(right_file, target_size, image_cfg['jpg_quality']), side="right")

    bars = {"left": st.progress(0, text="left iris"), "right": st.progress(0, text="right iris")}
    log_box = st.empty()
    log_lines = []

    def on_progress(stage, percent):
        side, _, name = stage.partition(": ")
        if side in bars:
            bars[side].progress(percent, text=f"{side} iris: {name}")

    def add_log(level, message):
        log_lines.append(f"{datetime.now().strftime('%H:%M:%S')} [{level.upper()}] {message}")
        log_box.code("\n".join(log_lines[-30:]))

    return asyncio.run(analyze_report(
        left, right, questionnaire, LLMGateway.from_config(config),
        on_progress=on_progress,
        add_log=add_log,
        options=PipelineOptions.from_config(config),
        pipeline_config=PipelineConfig(steps=config['pipeline'].get('steps', [])),
        policy=ScoringPolicy.from_config(config),
        side_failure=side_failure,
    ))


def display_analysis(analysis, title):
    st.subheader(f"{title}: overall health {analysis.overall_health}/100")

    zones = analysis_to_frame(analysis).drop(columns=["side"])
    st.dataframe(
        zones.style.apply(lambda row: [f"background-color: {STATUS_COLORS[row['status']]}"] * len(row), axis=1),
        hide_index=True,
        use_container_width=True,
    )

    scores = pd.DataFrame([s.model_dump() for s in analysis.system_scores]).set_index("system")
    st.bar_chart(scores["score"])

    if analysis.artifacts:
        st.markdown("**Artifacts**")
        st.table(pd.DataFrame([a.model_dump() for a in analysis.artifacts]))


def display_report(report, config):
    st.markdown(f"**Report {report.id}** ({report.timestamp})")
    st.info(report.summary or "No summary")
    for failure in report.failures:
        st.error(f"{failure.side} iris failed at {failure.stage}: {failure.code} - {failure.message}")

    left_col, right_col = st.columns(2)
    with left_col:
        if report.left_iris is not None:
            display_analysis(report.left_iris, "Left iris")
    with right_col:
        if report.right_iris is not None:
            display_analysis(report.right_iris, "Right iris")

    text = render_text_report(report, config)
    st.download_button("Download text report", text, file_name=f"{report.id}.txt")
    st.download_button("Download JSON", report.model_dump_json(by_alias=True, indent=2), file_name=f"{report.id}.json")


def main():
    config = load_config()
    store = get_store(config)

    st.title("Iris v9 Analysis System")
    st.sidebar.markdown(f"**Version:** {config['version']}")
    st.sidebar.markdown(f"**Model:** {config['model']['name']} ({config['model']['provider']})")
    side_failure = st.sidebar.radio(
        "When one side fails",
        ["abort", "partial"],
        index=0 if config['pipeline']['side_failure'] == "abort" else 1,
    )

    analyze_tab, history_tab = st.tabs(["New Analysis", "Saved Reports"])

    with analyze_tab:
        questionnaire = questionnaire_form()
        col1, col2 = st.columns(2)
        with col1:
            left_file = st.file_uploader("Left iris", type=["jpg", "jpeg", "png"], key="left_iris")
            if left_file:
                st.image(left_file, caption="Left iris", use_container_width=True)
        with col2:
            right_file = st.file_uploader("Right iris", type=["jpg", "jpeg", "png"], key="right_iris")
            if right_file:
                st.image(right_file, caption="Right iris", use_container_width=True)

        if st.button("Analyze", disabled=not (left_file and right_file)):
            try:
                report = run_analysis(config, questionnaire, left_file, right_file, side_failure)
            except SideAnalysisError as e:
                st.error(str(e))
            else:
                save_report(store, report)
                st.success("Analysis complete")
                display_report(report, config)

    with history_tab:
        report_ids = list(reversed(list_reports(store)))
        if not report_ids:
            st.info("No saved reports. Run an analysis first.")
        else:
            selected = st.selectbox("Select a report", report_ids)
            report = load_report(store, selected) if selected else None
            if report is not None:
                display_report(report, config)

    st.markdown("---")
    st.markdown("Iris v9 Analysis System | Multi-stage pipeline")


if __name__ == "__main__":
    main()
