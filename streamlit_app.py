# streamlit_app.py
import os

import streamlit as st

from config import settings
from images import ImageNotFoundError, ImageStore
from utils.cache import ExpiringCache

st.set_page_config(page_title="Image Service UI", layout="wide")
st.title("Upload and resize images")

# -------------------------------------------
# Store + cache
# -------------------------------------------
@st.cache_resource
def init_resources():
    """One store and one path cache shared by every browser session."""
    store = ImageStore(settings.UPLOAD_DIR, settings.CACHE_DIR)
    store.ensure_dirs()
    cache = ExpiringCache(
        default_ttl=settings.CACHE_DEFAULT_TTL,
        sweep_interval=settings.CACHE_SWEEP_INTERVAL,
    )
    return store, cache


store, cache = init_resources()

st.sidebar.header("Storage")
st.sidebar.write("Uploads:", os.path.abspath(store.upload_dir))
st.sidebar.write("Variants:", os.path.abspath(store.cache_dir))
st.sidebar.write("Cached paths:", len(cache))

# -------------------------------------------
# Upload
# -------------------------------------------
uploaded_files = st.sidebar.file_uploader(
    "Upload images",
    type=["png", "jpg", "jpeg", "gif", "bmp", "webp"],
    accept_multiple_files=True,
)

if uploaded_files and st.sidebar.button("Store uploaded images"):
    for f in uploaded_files:
        if f.size > settings.MAX_UPLOAD_BYTES:
            st.sidebar.error(f"{f.name} is larger than {settings.MAX_UPLOAD_BYTES} bytes")
            continue
        try:
            stored = store.save_upload(f, f.name)
            st.sidebar.success(f"Stored {stored}")
        except OSError as e:
            st.sidebar.error(f"Failed storing {f.name}: {e}")

# -------------------------------------------
# Preview
# -------------------------------------------
st.header("Preview a resized variant")
names = store.list_images()
if not names:
    st.write("No images stored yet. Upload some from the sidebar.")
else:
    filename = st.selectbox("Image", names)
    col_w, col_h = st.columns(2)
    width = col_w.number_input("Width", min_value=1, max_value=settings.MAX_RESIZE_DIMENSION, value=settings.DEFAULT_RESIZE)
    height = col_h.number_input("Height", min_value=1, max_value=settings.MAX_RESIZE_DIMENSION, value=settings.DEFAULT_RESIZE)

    if st.button("Resize"):
        width, height = int(width), int(height)
        cache_key = f"{filename}_{width}_{height}"
        path, found = cache.get(cache_key)
        from_cache = found and os.path.isfile(path)
        if not from_cache:
            try:
                path = store.resize(filename, width, height)
            except ImageNotFoundError:
                st.error("Image not found")
                path = None
            except (OSError, ValueError) as e:
                st.error(f"Error processing image: {e}")
                path = None
            if path:
                cache.set(cache_key, path)
        if path:
            st.caption("served from cache" if from_cache else "freshly resized")
            st.image(path)

st.sidebar.markdown("---")
if st.sidebar.button("Flush path cache"):
    cache.flush()
    st.rerun()
