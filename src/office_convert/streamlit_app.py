import os
import io

import requests
import streamlit as st

API_BASE = os.getenv("OFFICE_CONVERT_API_BASE", os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")
REQUEST_TIMEOUT_SEC = float(os.getenv("OFFICE_CONVERT_UI_TIMEOUT", "300"))


def _reset_state():
    for key in ["result", "error"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    st.session_state["upload_key"] = st.session_state.get("upload_key", 0) + 1


def _load_formats() -> dict[str, list[str]]:
    try:
        resp = requests.get(f"{API_BASE}/formats", timeout=10)
        resp.raise_for_status()
    except requests.RequestException as e:
        st.session_state["error"] = f"Failed to load formats: {e}"
        return {}
    return resp.json().get("conversions", {})


def _convert(uploaded_file: io.BytesIO, target: str) -> tuple[bytes, str, str] | None:
    files = {"file": (uploaded_file.name, uploaded_file.getvalue(), uploaded_file.type or "application/octet-stream")}
    try:
        resp = requests.post(
            f"{API_BASE}/convert",
            files=files,
            data={"target_format": target},
            timeout=REQUEST_TIMEOUT_SEC,
        )
    except requests.RequestException as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code != 200:
        try:
            detail = resp.json().get("detail", {})
            message = f"{detail.get('code')}: {detail.get('message')}"
            if detail.get("diagnostic"):
                message += f"\n\n{detail['diagnostic']}"
        except ValueError:
            message = resp.text
        st.session_state["error"] = f"Conversion failed ({resp.status_code}) {message}"
        return None
    name = os.path.splitext(uploaded_file.name)[0] + "." + target
    return resp.content, resp.headers.get("content-type", "application/octet-stream"), name


def main() -> None:
    st.set_page_config(page_title="Office Conversion Service", page_icon="📄", layout="centered")
    st.title("📄 Office Conversion Service")
    st.caption(f"API base: {API_BASE}")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    matrix = _load_formats()
    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload a document",
        type=sorted(matrix) or None,  # type: ignore[arg-type]
        key=f"uploader-{st.session_state['upload_key']}",
    )

    if uploaded:
        source = os.path.splitext(uploaded.name)[1].lstrip(".").lower()
        targets = matrix.get(source, [])
        if not targets:
            st.warning(f"No conversions available for .{source} files")
        else:
            default = targets.index("pdf") if "pdf" in targets else 0
            target = st.selectbox("Convert to", targets, index=default)
            if st.button("Convert", type="primary"):
                st.session_state.pop("error", None)
                with st.spinner("Converting..."):
                    result = _convert(uploaded, target)
                if result:
                    st.session_state["result"] = result

    if "result" in st.session_state:
        data, content_type, name = st.session_state["result"]
        st.success("Conversion complete!")
        st.download_button(label=f"Download {name}", data=data, file_name=name, mime=content_type)

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
