"""
Dual-Lens Bokeh
===============

Synthetic shallow depth of field from a normal/wide rear camera pair.
Per-lens calibration metadata drives rectification, SGBM disparity with
WLS filtering gives a foreground mask, and the sharp foreground is
composited over a stylized, blurred background.

References:
- OpenCV Stereo Vision: https://docs.opencv.org/4.x/dd/d53/tutorial_py_depthmap.html
- WLS disparity filtering: https://docs.opencv.org/4.x/d3/d14/tutorial_ximgproc_disparity_filtering.html
- Android multi-camera API: https://developer.android.com/training/camera2/multi-camera
"""

__version__ = "1.0.0"
