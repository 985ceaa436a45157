import os
import io
import requests
import streamlit as st

API_BASE = os.getenv("PREVIEW_SERVICE_API_BASE", os.getenv("API_BASE", "http://localhost:8000")).rstrip("/")
REQUEST_TIMEOUT = float(os.getenv("PREVIEW_SERVICE_UI_TIMEOUT", "300"))

STATE_LABELS = {
    "artifact": "✅ preview ready",
    "diagnostic": "❌ conversion failed",
    "none": "⏳ no preview yet",
}


def _list_documents() -> list[dict[str, object]] | None:
    try:
        resp = requests.get(f"{API_BASE}/documents", timeout=30)
    except Exception as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Listing failed: {resp.status_code} {resp.text}"
        return None
    return list(resp.json().get("documents", []))


def _upload(uploaded_file: io.BytesIO) -> dict[str, object] | None:
    try:
        files = {"file": (uploaded_file.name, uploaded_file.getvalue(), uploaded_file.type or "application/octet-stream")}
        resp = requests.post(f"{API_BASE}/documents", files=files, timeout=REQUEST_TIMEOUT)
    except Exception as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code not in (200, 201):
        st.session_state["error"] = f"Upload failed: {resp.status_code} {resp.text}"
        return None
    return resp.json()


def _regenerate(force: bool) -> dict[str, object] | None:
    try:
        resp = requests.get(
            f"{API_BASE}/previews-regenerate",
            params={"force": "true" if force else "false"},
            timeout=REQUEST_TIMEOUT,
        )
    except Exception as e:
        st.session_state["error"] = f"Regenerate failed: {e}"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Regenerate error: {resp.status_code} {resp.text}"
        return None
    return resp.json()


def summarize_report(report: dict[str, object]) -> list[tuple[str, str, str | None]]:
    """Flatten a regenerate report into (name, label, diagnostic) rows."""
    rows = []
    for entry in report.get("entries", []):  # type: ignore[union-attr]
        state = str(entry.get("state", "none"))
        rows.append((str(entry.get("name")), STATE_LABELS.get(state, state), entry.get("diagnostic")))
    return rows


def main() -> None:
    st.set_page_config(page_title="Document Preview Service", page_icon="📄", layout="centered")
    st.title("📄 Document Preview Service")
    st.caption(f"API base: {API_BASE}")

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload an office document",
        type=["docx", "doc", "xlsx", "xls", "pptx", "ppt", "odt", "ods", "odp", "txt", "csv"],  # type: ignore[arg-type]
        key=f"uploader-{st.session_state['upload_key']}",
    )
    if uploaded and st.button("Upload", type="primary"):
        with st.spinner("Uploading and building preview..."):
            res = _upload(uploaded)
        if res:
            st.toast(f"Stored {res.get('name')} (preview: {res.get('preview')})", icon="✅")
            st.session_state["upload_key"] += 1
            st.rerun()

    st.subheader("Documents")
    docs = _list_documents()
    if docs:
        for d in docs:
            links = d.get("links", {})
            label = STATE_LABELS.get(str(d.get("preview")), str(d.get("preview")))
            st.markdown(f"**{d.get('name')}** | {label} | [PDF]({API_BASE}{links.get('preview', '')})")  # type: ignore[union-attr]
    elif docs is not None:
        st.info("No documents yet.")

    st.subheader("Regenerate previews")
    force = st.checkbox("Force rebuild of up-to-date previews", value=False)
    if st.button("Regenerate all"):
        with st.spinner("Converting..."):
            report = _regenerate(force)
        if report:
            for name, label, diagnostic in summarize_report(report):
                st.write(f"{name}: {label}")
                if diagnostic:
                    with st.expander(f"Diagnostic for {name}"):
                        st.code(str(diagnostic), language="text")

    if err := st.session_state.pop("error", None):
        st.error(err)


if __name__ == "__main__":
    main()
