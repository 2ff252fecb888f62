from __future__ import annotations
from datetime import date

import streamlit as st

from school_core.config import load_settings
from school_core.errors import BulkMutationError, SchoolSyncError
from school_core.errors.handlers import ErrorContext, handle_error
from school_core.logging import setup_logging
from school_core.runtime import SyncRuntime
from school_core.sync import QueryKey
from school_core.ui import header, render_view_state

# ============================================================================
# PAGE CONFIGURATION
# ============================================================================
st.set_page_config(
    page_title="SchoolHub",
    page_icon="🏫",
    layout="wide",
)

ATTENDANCE_STATUSES = ["present", "absent", "late", "excused"]


@st.cache_resource
def init_logging():
    setup_logging()
    return True


def get_runtime() -> SyncRuntime:
    """
    One sync runtime per browser session.

    The cache holds rows filtered by the signed-in user's row-level
    security policies, so runtimes are never shared between sessions.
    """
    runtime = st.session_state.get("sync_runtime")
    if runtime is None or not runtime.is_running:
        runtime = SyncRuntime(load_settings()).start()
        st.session_state["sync_runtime"] = runtime
        st.session_state.pop("bindings", None)
    return runtime


def bound_state(runtime: SyncRuntime, key: QueryKey):
    """Reuse or attach this session's binding for ``key`` and wait for its data."""
    bindings = st.session_state.setdefault("bindings", {})
    binding = bindings.get(key)
    if binding is None:
        binding = runtime.bind(key)
        runtime.run(binding.attach())
        bindings[key] = binding
    st.session_state.setdefault("bindings_used", set()).add(key)
    return binding, runtime.run(binding.load())


def release_unused_bindings(runtime: SyncRuntime):
    """Detach bindings this script run did not render (class or date changed)."""
    bindings = st.session_state.get("bindings", {})
    used = st.session_state.pop("bindings_used", set())
    for key in [k for k in bindings if k not in used]:
        runtime.run(bindings.pop(key).detach())


def reset_bindings(runtime: SyncRuntime):
    """Detach every binding of this session; the next run attaches fresh ones."""
    for binding in st.session_state.pop("bindings", {}).values():
        runtime.run(binding.detach())
    st.session_state.pop("bindings_used", None)


# ============================================================================
# SIGN-IN
# ============================================================================
def sidebar_auth(runtime: SyncRuntime):
    user = runtime.auth.current_user
    with st.sidebar:
        if user is not None:
            st.markdown(f"**{user.email}**  \nRole: `{user.role}`")
            if st.button("Sign out"):
                runtime.run(runtime.auth.sign_out())
                reset_bindings(runtime)
                st.rerun()
            return user

        with st.form("sign_in"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Sign in")
        if submitted:
            try:
                runtime.run(runtime.auth.sign_in(email, password))
                reset_bindings(runtime)
                st.rerun()
            except SchoolSyncError as e:
                handle_error(e)
    return None


# ============================================================================
# SECTIONS
# ============================================================================
def classes_section(runtime: SyncRuntime):
    _, classes = bound_state(runtime, QueryKey.of("classes"))
    rows = classes.data or []
    if classes.is_error:
        handle_error(classes.error)
    if not rows:
        st.info("No classes yet.")
        return None
    labels = {row["id"]: row.get("name", row["id"]) for row in rows}
    return st.selectbox("Class", list(labels), format_func=labels.get)


def students_section(runtime: SyncRuntime, class_id):
    binding, students = bound_state(runtime, QueryKey.of("students", class_id=class_id))
    render_view_state(students, title="Students", columns=["full_name", "email", "class_id"])

    with st.expander("Add student"):
        with st.form("add_student", clear_on_submit=True):
            full_name = st.text_input("Full name")
            email = st.text_input("Email")
            if st.form_submit_button("Add") and full_name:
                with ErrorContext("Adding student", show_success=True, success_message=f"Added {full_name}"):
                    runtime.run(binding.create({"full_name": full_name, "email": email, "class_id": class_id}))
    return students.data or []


def attendance_section(runtime: SyncRuntime, class_id, roster):
    st.subheader("Attendance")
    day = st.date_input("Date", value=date.today()).isoformat()
    _, marked = bound_state(runtime, QueryKey.of("attendance", class_id=class_id, date=day))
    current = {row.get("student_id"): row.get("status") for row in (marked.data or [])}

    if not roster:
        st.caption("Add students to mark attendance.")
        return

    with st.form("attendance"):
        marks = {}
        for student in roster:
            status = current.get(student["id"], "present")
            marks[student["id"]] = st.radio(
                student.get("full_name", student["id"]),
                ATTENDANCE_STATUSES,
                index=ATTENDANCE_STATUSES.index(status) if status in ATTENDANCE_STATUSES else 0,
                horizontal=True,
                key=f"att_{student['id']}_{day}",
            )
        if st.form_submit_button("Save attendance"):
            try:
                result = runtime.run(runtime.coordinator.mark_attendance(class_id, day, marks))
                st.success(f"Saved attendance for {len(result.succeeded)} students")
            except BulkMutationError as e:
                st.warning(
                    f"Saved {len(e.result.succeeded)} students; "
                    f"{len(e.result.failed)} could not be saved and were reverted"
                )
                handle_error(e, log_error=False)
            except SchoolSyncError as e:
                handle_error(e)


def announcements_section(runtime: SyncRuntime, class_id):
    binding, announcements = bound_state(runtime, QueryKey.of("announcements", limit=20))
    render_view_state(
        announcements,
        title="Announcements",
        columns=["created_at", "title", "body"],
        empty_message="No announcements.",
    )

    with st.expander("Post announcement"):
        with st.form("announce", clear_on_submit=True):
            title = st.text_input("Title")
            body = st.text_area("Message")
            if st.form_submit_button("Post") and title:
                with ErrorContext("Posting announcement", show_success=True, success_message="Posted"):
                    runtime.run(binding.create({"title": title, "body": body, "class_id": class_id}))


# ============================================================================
# MAIN
# ============================================================================
init_logging()
header("SchoolHub", "Students, attendance and announcements in one place")

with ErrorContext("Connecting to Supabase") as connecting:
    runtime = get_runtime()

if not connecting.failed:
    user = sidebar_auth(runtime)
    if user is None:
        st.info("Sign in to see your classes.")
    else:
        class_id = classes_section(runtime)
        if class_id is not None:
            left, right = st.columns([3, 2])
            with left:
                roster = students_section(runtime, class_id)
                attendance_section(runtime, class_id, roster)
            with right:
                announcements_section(runtime, class_id)
    release_unused_bindings(runtime)
