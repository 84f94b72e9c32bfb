"""
Object Classes
==============

The 80 COCO class labels produced by the YOLO backend, indexed by
model output ID, plus coarse categories for grouping rules.

Rule object_class values are compared against these labels after
normalization (lowercase, trimmed).
"""

from typing import Dict, List, Optional, Tuple


COCO_CLASSES: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train",
    "truck", "boat", "traffic light", "fire hydrant", "stop sign",
    "parking meter", "bench", "bird", "cat", "dog", "horse", "sheep", "cow",
    "elephant", "bear", "zebra", "giraffe", "backpack", "umbrella", "handbag",
    "tie", "suitcase", "frisbee", "skis", "snowboard", "sports ball", "kite",
    "baseball bat", "baseball glove", "skateboard", "surfboard",
    "tennis racket", "bottle", "wine glass", "cup", "fork", "knife", "spoon",
    "bowl", "banana", "apple", "sandwich", "orange", "broccoli", "carrot",
    "hot dog", "pizza", "donut", "cake", "chair", "couch", "potted plant",
    "bed", "dining table", "toilet", "tv", "laptop", "mouse", "remote",
    "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear",
    "hair drier", "toothbrush",
)

CLASS_NAME_TO_ID: Dict[str, int] = {name: i for i, name in enumerate(COCO_CLASSES)}

CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "people": ("person",),
    "animals": (
        "bird", "cat", "dog", "horse", "sheep", "cow",
        "elephant", "bear", "zebra", "giraffe",
    ),
    "vehicles": (
        "bicycle", "car", "motorcycle", "airplane", "bus",
        "train", "truck", "boat",
    ),
    "outdoor": (
        "traffic light", "fire hydrant", "stop sign", "parking meter", "bench",
    ),
    "sports": (
        "frisbee", "skis", "snowboard", "sports ball", "kite",
        "baseball bat", "baseball glove", "skateboard", "surfboard", "tennis racket",
    ),
    "kitchen": ("bottle", "wine glass", "cup", "fork", "knife", "spoon", "bowl"),
    "food": (
        "banana", "apple", "sandwich", "orange", "broccoli",
        "carrot", "hot dog", "pizza", "donut", "cake",
    ),
    "furniture": ("chair", "couch", "potted plant", "bed", "dining table", "toilet"),
    "electronics": ("tv", "laptop", "mouse", "remote", "keyboard", "cell phone"),
    "appliances": ("microwave", "oven", "toaster", "sink", "refrigerator"),
    "other": (
        "backpack", "umbrella", "handbag", "tie", "suitcase",
        "book", "clock", "vase", "scissors", "teddy bear", "hair drier", "toothbrush",
    ),
}


def normalize_class_name(name: str) -> str:
    """Canonical form used for rule lookups."""
    return name.strip().lower()


def get_class_name(class_id: int) -> Optional[str]:
    """Label for a model output ID, or None if out of range."""
    if not isinstance(class_id, int) or not 0 <= class_id < len(COCO_CLASSES):
        return None
    return COCO_CLASSES[class_id]


def get_class_id(name: str) -> Optional[int]:
    return CLASS_NAME_TO_ID.get(normalize_class_name(name))


def get_classes_by_category(category: str) -> Optional[List[str]]:
    classes = CATEGORIES.get(category.strip().lower())
    return list(classes) if classes is not None else None


def get_category_for_class(name: str) -> Optional[str]:
    normalized = normalize_class_name(name)
    for category, classes in CATEGORIES.items():
        if normalized in classes:
            return category
    return None
