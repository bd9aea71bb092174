"""Streamlit UI for AIDA Medical consultations."""

import os

import requests
import streamlit as st

API_URL = os.environ.get("API_URL", "http://localhost:8000")

st.set_page_config(page_title="AIDA Medical", layout="wide")
st.title("AIDA Medical")
st.markdown("Multi-agent AI consultations powered by Google Gemini")
st.divider()

try:
    requests.get(f"{API_URL}/health", timeout=5)
except Exception:
    st.error(f"Could not connect to API at {API_URL}. Is the FastAPI server running?")
    st.stop()

with st.sidebar:
    st.subheader("Doctor")
    user_id = st.text_input("User ID", value=st.session_state.get("user_id", ""))
    user_email = st.text_input("Email", value=st.session_state.get("user_email", ""))
    tier = st.radio("Subscription", ["free", "premium"], horizontal=True)
    st.session_state.user_id = user_id
    st.session_state.user_email = user_email

headers = {"X-Subscription-Tier": tier}
if user_id:
    headers["X-User-Id"] = user_id
if user_email:
    headers["X-User-Email"] = user_email

if "selected_agents" not in st.session_state:
    st.session_state.selected_agents = ["central"]
if "consultation" not in st.session_state:
    st.session_state.consultation = None

tab_consult, tab_history = st.tabs(["Consultation", "History"])


def _toggle(agent_id: str):
    resp = requests.post(
        f"{API_URL}/agents/selection",
        json={"selection": st.session_state.selected_agents, "agent_id": agent_id},
        headers=headers,
        timeout=10,
    )
    if resp.status_code != 200:
        st.error(f"API error: {resp.status_code} - {resp.text}")
        return
    data = resp.json()
    if not data["allowed"]:
        st.warning("That agent needs a premium subscription, or the free agent limit is reached.")
    st.session_state.selected_agents = data["selection"]


# -- Consultation Tab --

with tab_consult:
    patient_filter = st.text_input("Search patients", placeholder="Name, ID or condition")
    try:
        patient_ids = requests.get(
            f"{API_URL}/patients", params={"q": patient_filter}, timeout=5
        ).json()["patient_ids"]
        agents = requests.get(f"{API_URL}/agents", timeout=5).json()["agents"]
    except Exception:
        st.error("Could not fetch patients or agents.")
        patient_ids, agents = [], []

    col1, col2 = st.columns([1, 2])

    with col1:
        st.subheader("Patient")
        selected_id = st.selectbox("Patient ID", patient_ids)
        if selected_id:
            try:
                patient = requests.get(f"{API_URL}/patients/{selected_id}", timeout=5).json()
                st.markdown(f"**Name:** {patient['name']}")
                st.markdown(f"**Age:** {patient['age']} | **Gender:** {patient['gender']}")
                st.markdown(f"**Condition:** {patient.get('condition') or 'N/A'}")
            except Exception:
                st.warning("Could not fetch patient details.")

        st.subheader("Agents")
        for agent in agents:
            label = agent["display_name"] + (" (premium)" if agent["is_premium"] else "")
            checked = agent["id"] in st.session_state.selected_agents
            if st.checkbox(label, value=checked, key=f"agent_{agent['id']}") != checked:
                _toggle(agent["id"])
                st.rerun()

    with col2:
        st.subheader("Question")
        query = st.text_area("Describe the clinical question", height=100)
        symptoms_text = st.text_input("Symptoms (comma separated)")
        start_button = st.button("Start Analysis", type="primary", use_container_width=True)

        if start_button and selected_id:
            with st.spinner("Consulting the selected specialist agents..."):
                try:
                    resp = requests.post(
                        f"{API_URL}/consultations",
                        json={
                            "patient_id": selected_id,
                            "query": query,
                            "symptoms": [s.strip() for s in symptoms_text.split(",") if s.strip()],
                            "agent_ids": st.session_state.selected_agents,
                        },
                        headers=headers,
                        timeout=180,
                    )
                    if resp.status_code == 200:
                        st.session_state.consultation = resp.json()
                    elif resp.status_code == 401:
                        st.error("Please sign in to start an AI consultation.")
                    else:
                        st.error(f"API error: {resp.status_code} - {resp.text}")
                except requests.exceptions.Timeout:
                    st.error("Request timed out. Try again with fewer agents.")
                except Exception as e:
                    st.error(f"Error: {str(e)}")

        result = st.session_state.consultation
        if result:
            for warning in result.get("warnings", []):
                st.warning(warning)

            consensus = result["consensus"]
            st.metric("Consensus level", f"{consensus['level']}%")
            st.markdown("### Recommendation")
            st.markdown(consensus["recommendation"])

            contributions = result["contributions"]
            if contributions:
                agent_tabs = st.tabs([c["agent_id"] for c in contributions])
                for agent_tab, c in zip(agent_tabs, contributions):
                    with agent_tab:
                        st.markdown(f"**Confidence:** {c['confidence']}%")
                        st.markdown(c["opinion"])
                        if c.get("reasoning"):
                            with st.expander("Reasoning"):
                                st.markdown(c["reasoning"])
                        for source in c.get("sources", []):
                            st.markdown(f"- {source['title']}" + (f" ({source['url']})" if source.get("url") else ""))

            consultation_id = result["consultation"]["id"]
            st.markdown("### Attachments")
            upload = st.file_uploader("Attach a file or image", key=f"upload_{consultation_id}")
            if upload is not None and st.button("Upload"):
                resp = requests.post(
                    f"{API_URL}/consultations/{consultation_id}/files",
                    files={"file": (upload.name, upload.getvalue(), upload.type)},
                    headers=headers,
                    timeout=60,
                )
                if resp.status_code == 200:
                    st.success(f"Uploaded {upload.name}")
                else:
                    st.error(f"API error: {resp.status_code} - {resp.text}")

            st.markdown("### Follow-up")
            follow_agent = st.selectbox("Ask agent", st.session_state.selected_agents)
            follow_up = st.chat_input("Ask a follow-up question...")
            if follow_up:
                with st.spinner("Waiting for the agent..."):
                    resp = requests.post(
                        f"{API_URL}/consultations/{consultation_id}/messages",
                        json={"agent_id": follow_agent, "message": follow_up},
                        headers=headers,
                        timeout=60,
                    )
                if resp.status_code == 200:
                    with st.chat_message("user"):
                        st.markdown(follow_up)
                    with st.chat_message("assistant"):
                        st.markdown(resp.json()["reply"]["content"])
                else:
                    st.error(f"API error: {resp.status_code} - {resp.text}")
        elif not start_button:
            st.info("Select a patient and agents, then click 'Start Analysis' to begin.")


# -- History Tab --

with tab_history:
    st.subheader("Past Consultations")
    if not user_id:
        st.info("Enter a user ID in the sidebar to see your consultations.")
    else:
        try:
            resp = requests.get(f"{API_URL}/consultations", headers=headers, timeout=10)
            consultations = resp.json().get("consultations", []) if resp.status_code == 200 else []
        except Exception:
            st.error("Could not fetch consultations.")
            consultations = []

        for c in consultations:
            level = c.get("consensus_level")
            title = f"{c['patient_name']} - {c['query'][:60]} ({c['status']})"
            with st.expander(title):
                if level is not None:
                    st.markdown(f"**Consensus:** {level}%")
                if c.get("final_recommendation"):
                    st.markdown(c["final_recommendation"])
                detail = requests.get(f"{API_URL}/consultations/{c['id']}", headers=headers, timeout=10)
                if detail.status_code == 200:
                    for m in detail.json()["messages"]:
                        speaker = "You" if m["sender"] == "user" else (m.get("ai_type") or "AI")
                        st.markdown(f"**{speaker}:** {m['content']}")
