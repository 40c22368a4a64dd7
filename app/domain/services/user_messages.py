"""
קטלוג הודעות למשתמש - טבלה דו-ממדית (סוג מדיה × סיבת כישלון).

כל הודעה מציינת במפורש שהקרדיטים הוחזרו; REFUND_PENDING_MESSAGE
משמשת כשהזיכוי נכשל. הטבלה נבנית פעם אחת בזמן import
ומוקפאת; בדיקת שלמות (5 × 9) רצה באותו זמן.
"""
from types import MappingProxyType
from typing import Mapping

from app.db.models.media_record import MediaKind, FailureReason

_MESSAGES: dict[MediaKind, dict[FailureReason, str]] = {
    MediaKind.IMAGE_GENERATION: {
        FailureReason.SAFETY_BLOCKED: (
            "⚠️ Não foi possível gerar a imagem porque o conteúdo do prompt foi bloqueado pela política de segurança. Por favor, revise o texto, remova termos sensíveis e tente novamente. Seus créditos foram devolvidos automaticamente."
        ),
        FailureReason.PROVIDER_ERROR: (
            "Houve um erro no serviço de geração de imagens. Seus créditos foram devolvidos. Por favor, tente novamente em alguns minutos."
        ),
        FailureReason.INTERNAL_ERROR: (
            "Ocorreu um erro interno ao processar sua imagem. Seus créditos foram devolvidos automaticamente. Por favor, tente novamente."
        ),
        FailureReason.STORAGE_ERROR: (
            "A imagem foi gerada mas houve erro ao salvá-la. Seus créditos foram devolvidos. Por favor, tente novamente."
        ),
        FailureReason.TIMEOUT_ERROR: (
            "O processamento da imagem excedeu o tempo limite. Seus créditos foram devolvidos. Por favor, tente novamente."
        ),
        FailureReason.QUOTA_ERROR: (
            "O serviço de imagens atingiu o limite temporário. Seus créditos foram devolvidos. Por favor, aguarde alguns minutos."
        ),
        FailureReason.NETWORK_ERROR: (
            "Erro de conexão com o serviço de imagens. Seus créditos foram devolvidos. Por favor, tente novamente."
        ),
        FailureReason.INVALID_INPUT: (
            "Os parâmetros fornecidos são inválidos. Seus créditos foram devolvidos. Por favor, verifique suas configurações."
        ),
        FailureReason.UNKNOWN_ERROR: (
            "Ocorreu um erro inesperado. Seus créditos foram devolvidos automaticamente. Por favor, tente novamente."
        ),
    },
    MediaKind.IMAGE_EDIT: {
        FailureReason.SAFETY_BLOCKED: (
            "⚠️ Não foi possível editar a imagem porque o conteúdo foi bloqueado pela política de segurança. Por favor, revise o prompt de edição e tente novamente. Seus créditos foram devolvidos."
        ),
        FailureReason.PROVIDER_ERROR: (
            "Houve um erro no serviço de edição de imagens. Seus créditos foram devolvidos. Por favor, tente novamente."
        ),
        FailureReason.INTERNAL_ERROR: (
            "Ocorreu um erro interno ao editar sua imagem. Seus créditos foram devolvidos automaticamente."
        ),
        FailureReason.STORAGE_ERROR: (
            "A imagem foi editada mas houve erro ao salvá-la. Seus créditos foram devolvidos."
        ),
        FailureReason.TIMEOUT_ERROR: (
            "A edição da imagem excedeu o tempo limite. Seus créditos foram devolvidos."
        ),
        FailureReason.QUOTA_ERROR: (
            "O serviço de edição atingiu o limite temporário. Seus créditos foram devolvidos."
        ),
        FailureReason.NETWORK_ERROR: (
            "Erro de conexão com o serviço de edição. Seus créditos foram devolvidos."
        ),
        FailureReason.INVALID_INPUT: (
            "A imagem ou parâmetros fornecidos são inválidos. Seus créditos foram devolvidos."
        ),
        FailureReason.UNKNOWN_ERROR: (
            "Ocorreu um erro inesperado na edição. Seus créditos foram devolvidos automaticamente."
        ),
    },
    MediaKind.VIDEO_GENERATION: {
        FailureReason.SAFETY_BLOCKED: (
            "⚠️ Não foi possível gerar o vídeo porque o conteúdo do prompt foi bloqueado pela política de segurança. Por favor, revise o texto, remova termos sensíveis e tente novamente. Seus créditos foram devolvidos automaticamente."
        ),
        FailureReason.PROVIDER_ERROR: (
            "Houve um erro no serviço de geração de vídeo. Seus créditos foram devolvidos. Por favor, tente novamente em alguns minutos."
        ),
        FailureReason.INTERNAL_ERROR: (
            "Ocorreu um erro interno ao processar seu vídeo. Seus créditos foram devolvidos automaticamente."
        ),
        FailureReason.STORAGE_ERROR: (
            "O vídeo foi gerado mas houve erro ao salvá-lo. Seus créditos foram devolvidos."
        ),
        FailureReason.TIMEOUT_ERROR: (
            "O processamento do vídeo excedeu o tempo limite. Seus créditos foram devolvidos."
        ),
        FailureReason.QUOTA_ERROR: (
            "O serviço de vídeo atingiu o limite temporário. Seus créditos foram devolvidos."
        ),
        FailureReason.NETWORK_ERROR: (
            "Erro de conexão com o serviço de vídeo. Seus créditos foram devolvidos."
        ),
        FailureReason.INVALID_INPUT: (
            "Os parâmetros fornecidos são inválidos. Seus créditos foram devolvidos."
        ),
        FailureReason.UNKNOWN_ERROR: (
            "Ocorreu um erro inesperado. Seus créditos foram devolvidos automaticamente."
        ),
    },
    MediaKind.UPSCALE: {
        FailureReason.SAFETY_BLOCKED: (
            "⚠️ Não foi possível fazer upscale porque o conteúdo foi bloqueado pela política de segurança. Seus créditos foram devolvidos."
        ),
        FailureReason.PROVIDER_ERROR: (
            "Houve um erro no serviço de upscale. Seus créditos foram devolvidos."
        ),
        FailureReason.INTERNAL_ERROR: (
            "Ocorreu um erro interno ao processar o upscale. Seus créditos foram devolvidos."
        ),
        FailureReason.STORAGE_ERROR: (
            "O upscale foi concluído mas houve erro ao salvar. Seus créditos foram devolvidos."
        ),
        FailureReason.TIMEOUT_ERROR: (
            "O upscale excedeu o tempo limite. Seus créditos foram devolvidos."
        ),
        FailureReason.QUOTA_ERROR: (
            "O serviço de upscale atingiu o limite temporário. Seus créditos foram devolvidos."
        ),
        FailureReason.NETWORK_ERROR: (
            "Erro de conexão com o serviço de upscale. Seus créditos foram devolvidos."
        ),
        FailureReason.INVALID_INPUT: (
            "A imagem fornecida é inválida para upscale. Seus créditos foram devolvidos."
        ),
        FailureReason.UNKNOWN_ERROR: (
            "Ocorreu um erro inesperado no upscale. Seus créditos foram devolvidos."
        ),
    },
    MediaKind.MODEL_TRAINING: {
        FailureReason.SAFETY_BLOCKED: (
            "⚠️ O treinamento foi bloqueado por conter conteúdo sensível. Seus créditos foram devolvidos."
        ),
        FailureReason.PROVIDER_ERROR: (
            "Houve um erro no serviço de treinamento. Seus créditos foram devolvidos."
        ),
        FailureReason.INTERNAL_ERROR: (
            "Ocorreu um erro interno durante o treinamento. Seus créditos foram devolvidos."
        ),
        FailureReason.STORAGE_ERROR: (
            "O modelo foi treinado mas houve erro ao salvar. Seus créditos foram devolvidos."
        ),
        FailureReason.TIMEOUT_ERROR: (
            "O treinamento excedeu o tempo limite. Seus créditos foram devolvidos."
        ),
        FailureReason.QUOTA_ERROR: (
            "O serviço de treinamento atingiu o limite temporário. Seus créditos foram devolvidos."
        ),
        FailureReason.NETWORK_ERROR: (
            "Erro de conexão com o serviço de treinamento. Seus créditos foram devolvidos."
        ),
        FailureReason.INVALID_INPUT: (
            "As fotos fornecidas são inválidas para treinamento. Seus créditos foram devolvidos."
        ),
        FailureReason.UNKNOWN_ERROR: (
            "Ocorreu um erro inesperado no treinamento. Seus créditos foram devolvidos."
        ),
    },
}


def _freeze(table: dict[MediaKind, dict[FailureReason, str]]) -> Mapping[MediaKind, Mapping[FailureReason, str]]:
    missing = [
        (kind.value, reason.value)
        for kind in MediaKind
        for reason in FailureReason
        if reason not in table.get(kind, {})
    ]
    if missing:
        raise RuntimeError(f"User message catalog is incomplete: {missing}")
    return MappingProxyType({kind: MappingProxyType(dict(reasons)) for kind, reasons in table.items()})


USER_MESSAGES = _freeze(_MESSAGES)


def get_user_message(kind: MediaKind, reason: FailureReason) -> str:
    """הודעה ידידותית למשתמש עבור (סוג מדיה, סיבת כישלון)"""
    return USER_MESSAGES[MediaKind(kind)][FailureReason(reason)]

# כשהזיכוי ב-ledger נכשל: הרשומה FAILED אבל הקרדיטים עוד לא הוחזרו
REFUND_PENDING_MESSAGE = (
    "Não foi possível concluir o processamento e a devolução dos seus créditos ainda está pendente. "
    "Nossa equipe de suporte foi notificada e fará o reembolso em breve."
)
