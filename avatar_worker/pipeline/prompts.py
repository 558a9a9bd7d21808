"""
Prompt builders for the generative steps.
"""

from .models import Scene

IMAGE_PROMPT_TEMPLATE = (
    "Professional cinematic portrait of a confident business person in {environment}, "
    "wearing {wardrobe}, {lighting} lighting, high quality, photorealistic, ultra detailed, 8k"
)

VIDEO_PROMPT_TEMPLATE = "{movement}, {camera}, professional video"


def build_image_prompt(scene: Scene) -> str:
    return IMAGE_PROMPT_TEMPLATE.format(
        environment=scene.environment or "modern office",
        wardrobe=scene.wardrobe or "business attire",
        lighting=scene.mood_lighting or "cinematic",
    )


def build_video_prompt(scene: Scene) -> str:
    return VIDEO_PROMPT_TEMPLATE.format(
        movement=scene.movement or "subtle head movements",
        camera=scene.camera or "medium close-up shot",
    )
